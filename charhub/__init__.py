"""
CharHub 캐릭터 자동 생성(population) 배치
"""
