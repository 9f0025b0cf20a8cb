"""
배치 실행 로그 저장/조회
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Protocol

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charhub.models import BatchGenerationLog
from charhub.schemas.batch import BatchRunSummary, BatchStats


class BatchLogRepository(Protocol):
    async def create(self, *, scheduled_at: datetime, target_count: int, selected_images: List[str]) -> str: ...

    async def finalize(self, batch_id: str, summary: BatchRunSummary) -> None: ...

    async def get_recent_batches(self, limit: int = 10) -> List[BatchGenerationLog]: ...

    async def get_batch_stats(self) -> BatchStats: ...


class SqlBatchLogRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, *, scheduled_at: datetime, target_count: int, selected_images: List[str]) -> str:
        async with self.session_factory() as session:
            log = BatchGenerationLog(
                scheduled_at=scheduled_at,
                target_count=target_count,
                selected_images=list(selected_images),
                generated_char_ids=[],
                errors=[],
            )
            session.add(log)
            await session.commit()
            return str(log.id)

    async def finalize(self, batch_id: str, summary: BatchRunSummary) -> None:
        async with self.session_factory() as session:
            log = await session.get(BatchGenerationLog, uuid.UUID(batch_id))
            if log is None:
                return
            log.executed_at = summary.executed_at
            log.completed_at = summary.completed_at
            log.success_count = summary.success_count
            log.failure_count = summary.failure_count
            log.duration = summary.duration
            log.status = summary.status.value
            log.abort_reason = summary.abort_reason
            log.generated_char_ids = list(summary.generated_char_ids)
            log.errors = [
                {"id": r.curated_image_id, "error": r.error, "type": r.error_type.value if r.error_type else None}
                for r in summary.results
                if not r.success
            ]
            await session.commit()

    async def get_recent_batches(self, limit: int = 10) -> List[BatchGenerationLog]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(BatchGenerationLog)
                .order_by(BatchGenerationLog.scheduled_at.desc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def get_batch_stats(self) -> BatchStats:
        async with self.session_factory() as session:
            total_batches, total_generated, total_target, avg_duration = (await session.execute(
                select(
                    func.count(BatchGenerationLog.id),
                    func.sum(BatchGenerationLog.success_count),
                    func.sum(BatchGenerationLog.target_count),
                    func.avg(BatchGenerationLog.duration),
                )
            )).one()

        total_generated = int(total_generated or 0)
        total_target = int(total_target or 0)
        return BatchStats(
            total_batches=int(total_batches or 0),
            total_generated=total_generated,
            success_rate=(total_generated / total_target) if total_target > 0 else 0.0,
            avg_duration=round(float(avg_duration or 0)),
        )
