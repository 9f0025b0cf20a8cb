"""
캐릭터 자동 생성용 Pydantic 스키마 (LLM 출력 검증)
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
import re


def _sanitize_text(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r'<[^>]*>', '', str(value)).strip()
    if max_length is not None and len(text) > max_length:
        text = text[:max_length].rstrip()
    return text or None


class ImageAnalysis(BaseModel):
    """이미지 분석 결과 (비전 모델)"""
    physical_characteristics: Optional[str] = None
    visual_style: Optional[str] = None
    clothing: Optional[str] = None
    mood: Optional[str] = None
    setting: Optional[str] = None
    gender: Optional[str] = None
    species: Optional[str] = None
    suggested_names: List[str] = Field(default_factory=list)

    @field_validator('physical_characteristics', 'visual_style', 'clothing', 'mood', 'setting', mode='before')
    @classmethod
    def validate_text(cls, v):
        return _sanitize_text(v, 2000)


class CharacterDraft(BaseModel):
    """LLM이 조합한 캐릭터 데이터"""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    age: Optional[int] = Field(None, ge=0, le=10000)
    gender: Optional[str] = Field(None, max_length=50)
    species: Optional[str] = Field(None, max_length=50)
    style: str = "ANIME"
    physical_characteristics: Optional[str] = None
    personality: Optional[str] = None
    history: Optional[str] = None

    @field_validator('first_name', 'last_name', mode='before')
    @classmethod
    def validate_names(cls, v):
        return _sanitize_text(v, 100)

    @field_validator('physical_characteristics', 'personality', 'history', mode='before')
    @classmethod
    def validate_long_text(cls, v):
        return _sanitize_text(v, 5000)

    @field_validator('gender', 'species', mode='before')
    @classmethod
    def normalize_category(cls, v):
        text = _sanitize_text(v, 50)
        return text.lower() if text else None

    @field_validator('style', mode='before')
    @classmethod
    def normalize_style(cls, v):
        text = _sanitize_text(v, 30)
        return text.upper().replace(" ", "_").replace("-", "_") if text else "ANIME"
