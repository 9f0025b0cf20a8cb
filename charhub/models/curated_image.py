"""
큐레이션 이미지 모델 - 캐릭터 자동 생성의 후보 풀
"""

import enum
import uuid

from sqlalchemy import Column, String, Text, Float, DateTime, func

from charhub.core.database import Base, UUID, JSON


class CurationStatus(str, enum.Enum):
    """큐레이션 상태"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AgeRating(str, enum.Enum):
    """연령 등급 (낮은 등급부터)"""
    L = "L"
    TEN = "TEN"
    TWELVE = "TWELVE"
    FOURTEEN = "FOURTEEN"
    SIXTEEN = "SIXTEEN"
    EIGHTEEN = "EIGHTEEN"


class CuratedImage(Base):
    """큐레이션 이미지 모델"""
    __tablename__ = "curated_images"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    source_url = Column(String(1000), nullable=False)
    description = Column(Text)

    status = Column(String(20), nullable=False, default=CurationStatus.PENDING.value, index=True)
    age_rating = Column(String(20), nullable=False, default=AgeRating.L.value, index=True)
    quality_score = Column(Float, nullable=True)

    # 시각/주제 태그, 콘텐츠 태그
    tags = Column(JSON(), default=list)
    content_tags = Column(JSON(), default=list)

    # 분류 (null == unknown)
    gender = Column(String(50), nullable=True)
    species = Column(String(50), nullable=True)

    # 생성된 캐릭터 (null 이 아니면 재선택 금지)
    generated_char_id = Column(UUID(), nullable=True, index=True)
    rejection_reason = Column(Text)
    processed_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<CuratedImage(id={self.id}, status={self.status})>"
