"""
런타임 설정(Key-Value) 모델

운영 중에 배치 크기/재시도 횟수/타임아웃을 재배포 없이 바꿀 수 있도록
DB에 저장한다. 값이 없으면 환경변수(Settings)를 따른다.
"""

from sqlalchemy import Column, String, DateTime, func
import uuid

from charhub.core.database import Base, UUID, JSON


class SiteConfig(Base):
    """런타임 설정(Key-Value)"""

    __tablename__ = "site_configs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    key = Column(String(100), nullable=False, unique=True, index=True)
    value = Column(JSON(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<SiteConfig(key={self.key})>"
