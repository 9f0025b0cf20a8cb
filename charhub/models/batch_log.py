"""
배치 생성 로그 모델
"""

from sqlalchemy import Column, String, Text, Integer, DateTime, func
import uuid

from charhub.core.database import Base, UUID, JSON


class BatchGenerationLog(Base):
    """배치 실행 1회 = 1 row"""
    __tablename__ = "batch_generation_logs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    executed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    target_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    duration = Column(Integer)  # seconds

    status = Column(String(20))  # COMPLETED / ABORTED
    abort_reason = Column(Text)

    selected_images = Column(JSON(), default=list)
    generated_char_ids = Column(JSON(), default=list)
    errors = Column(JSON(), default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<BatchGenerationLog(id={self.id}, status={self.status})>"
