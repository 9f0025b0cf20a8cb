"""
캐릭터 모델 - 자동 생성 파이프라인이 쓰고 최근 분포 계산이 읽는 필드
"""

from sqlalchemy import Column, String, Text, Integer, DateTime, func
import uuid

from charhub.core.database import Base, UUID, JSON


class Character(Base):
    """캐릭터 모델"""
    __tablename__ = "characters"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    creator_id = Column(UUID(), nullable=False, index=True)

    # 🔥 기본 정보
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100))
    age = Column(Integer)
    gender = Column(String(50))
    species = Column(String(50))
    style = Column(String(30), default="ANIME")

    # 📖 설정
    physical_characteristics = Column(Text)
    personality = Column(Text)
    history = Column(Text)

    # 🚀 공개 설정
    visibility = Column(String(20), nullable=False, default="PUBLIC", index=True)
    age_rating = Column(String(20), nullable=False, default="L")
    content_tags = Column(JSON(), default=list)

    # 🎨 미디어
    avatar_url = Column(String(500))
    reference_image_url = Column(String(1000))

    # 📅 타임스탬프
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Character(id={self.id}, first_name={self.first_name})>"
