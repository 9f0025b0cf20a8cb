"""
배치 캐릭터 생성 오케스트레이터

INITIALIZING → SELECTING → PROCESSING → COMPLETED | ABORTED

- 선택된 순서대로 하나씩 순차 처리 (외부 API 레이트리밋 때문에 병렬 X)
- 아이템 실패는 여기서 분류/재시도/스킵하고 밖으로 던지지 않는다
- 선택 단계 에러는 그대로 전파 (호출자가 로깅)
- 아이템마다 에러율/연속 실패를 보고 배치 중단 여부 판단
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from charhub.schemas.batch import (
    BatchErrorType,
    BatchOptions,
    BatchRunSummary,
    BatchStats,
    BatchStatus,
    GenerationResult,
    SelectionCriteria,
)
from charhub.services.batch.diversification import DiversificationAlgorithm
from charhub.services.batch.error_handler import BatchErrorHandler, error_message
from charhub.services.batch_config_service import BatchConfig
from charhub.services.batch_log_service import BatchLogRepository
from charhub.services.candidate_store import CandidateStore
from charhub.services.metrics_service import MetricsService

logger = logging.getLogger(__name__)


class ItemTimeoutError(Exception):
    """아이템 처리 시간 초과 (메시지에 'timed out' 포함 → timeout 으로 분류)"""


class GenerationPipeline(Protocol):
    async def generate(self, curated_image_id: str) -> str: ...


class BatchConfigSource(Protocol):
    async def get_batch_config(self) -> BatchConfig: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _BatchRun:
    target_count: int
    scheduled_at: datetime
    started_at: datetime = field(default_factory=_now)
    status: BatchStatus = BatchStatus.INITIALIZING
    batch_id: Optional[str] = None
    executed_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    abort_reason: Optional[str] = None
    selected_images: List[str] = field(default_factory=list)
    generated_char_ids: List[str] = field(default_factory=list)
    results: List[GenerationResult] = field(default_factory=list)

    def transition(self, status: BatchStatus) -> None:
        logger.info(f"배치 상태: {self.status.value} → {status.value}")
        self.status = status

    @property
    def error_rate(self) -> float:
        done = self.success_count + self.failure_count
        return self.failure_count / done if done else 0.0

    def finalize(self) -> BatchRunSummary:
        completed_at = _now()
        return BatchRunSummary(
            batch_id=self.batch_id,
            status=self.status,
            abort_reason=self.abort_reason,
            scheduled_at=self.scheduled_at,
            executed_at=self.executed_at,
            completed_at=completed_at,
            target_count=self.target_count,
            success_count=self.success_count,
            failure_count=self.failure_count,
            duration=max(0, round((completed_at - self.started_at).total_seconds())),
            selected_images=list(self.selected_images),
            generated_char_ids=list(self.generated_char_ids),
            results=list(self.results),
        )


def default_criteria(count: int) -> SelectionCriteria:
    return SelectionCriteria(
        count=count,
        style_balance=True,
        tag_diversity=True,
        gender_balance=True,
        species_diversity=True,
    )


class BatchCharacterGenerator:
    def __init__(
        self,
        selector: DiversificationAlgorithm,
        error_handler: BatchErrorHandler,
        pipeline: GenerationPipeline,
        *,
        config_source: BatchConfigSource,
        candidate_store: Optional[CandidateStore] = None,
        batch_logs: Optional[BatchLogRepository] = None,
        metrics: Optional[MetricsService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.selector = selector
        self.error_handler = error_handler
        self.pipeline = pipeline
        self.config_source = config_source
        self.candidate_store = candidate_store
        self.batch_logs = batch_logs
        self.metrics = metrics
        self._sleep = sleep

    async def run_batch(self, target_count: int, options: Optional[BatchOptions] = None) -> BatchRunSummary:
        """배치 1회 실행. 아이템 실패/중단은 요약의 status 로만 드러난다."""
        if target_count < 0:
            raise ValueError("target_count must be >= 0")
        options = options or BatchOptions()

        # INITIALIZING
        started_at = _now()
        config = await self.config_source.get_batch_config()
        target = min(target_count, config.batch_size)
        max_retries = options.max_retries or config.retry_attempts
        timeout_seconds = (options.timeout_minutes or config.timeout_minutes) * 60

        run = _BatchRun(
            target_count=target,
            scheduled_at=options.scheduled_at or started_at,
            started_at=started_at,
        )
        self.error_handler.reset()
        self.error_handler.max_retries = max_retries
        logger.info(
            f"🚀 배치 캐릭터 생성 시작: target={target} (requested={target_count}) "
            f"max_retries={max_retries} timeout={timeout_seconds:.0f}s"
        )

        # SELECTING
        run.transition(BatchStatus.SELECTING)
        if options.criteria is not None:
            criteria = options.criteria.model_copy(update={"count": target})
        else:
            criteria = default_criteria(target)
        run.selected_images = await self.selector.select_images(criteria)
        logger.info(f"선택된 이미지: {len(run.selected_images)}개")

        if self.batch_logs is not None:
            run.batch_id = await self.batch_logs.create(
                scheduled_at=run.scheduled_at,
                target_count=target,
                selected_images=run.selected_images,
            )

        if not run.selected_images:
            logger.warning("생성할 승인 이미지가 없습니다")
            run.transition(BatchStatus.COMPLETED)
            return await self._finish(run)

        # PROCESSING
        run.transition(BatchStatus.PROCESSING)
        run.executed_at = _now()
        total = len(run.selected_images)
        for i, image_id in enumerate(run.selected_images):
            logger.info(f"캐릭터 생성 중: {image_id} ({i + 1}/{total})")
            result = await self._process_item(image_id, max_retries, timeout_seconds)
            run.results.append(result)

            if result.success:
                run.success_count += 1
                run.consecutive_failures = 0
                if result.character_id:
                    run.generated_char_ids.append(result.character_id)
            else:
                run.failure_count += 1
                run.consecutive_failures += 1

            if self.error_handler.should_abort_batch(run.error_rate, run.consecutive_failures):
                run.abort_reason = (
                    f"error_rate={run.error_rate:.2f} consecutive_failures={run.consecutive_failures}"
                )
                run.transition(BatchStatus.ABORTED)
                await self._count("batch_aborted")
                break

            if i < total - 1 and options.delay_between_ms > 0:
                await self._sleep(options.delay_between_ms / 1000)

        if run.status != BatchStatus.ABORTED:
            run.transition(BatchStatus.COMPLETED)
        return await self._finish(run)

    async def _process_item(self, image_id: str, max_retries: int, timeout_seconds: float) -> GenerationResult:
        """한 아이템을 재시도 포함해 처리. 예외를 밖으로 내보내지 않는다."""
        started = time.monotonic()
        if self.candidate_store is not None:
            try:
                await self.candidate_store.mark_processing(image_id)
            except Exception as e:
                logger.error(f"후보 처리중 상태 기록 실패: {image_id}: {e}")

        attempt = 0
        last_error: Optional[str] = None
        last_type: Optional[BatchErrorType] = None
        while attempt < max_retries:
            attempt += 1
            try:
                character_id = await self._generate_with_timeout(image_id, timeout_seconds)
            except Exception as e:
                ctx = self.error_handler.handle_error(
                    e, item_id=image_id, operation="generate_character", attempt=attempt
                )
                last_error, last_type = error_message(e), ctx.type
                await self._count("batch_item_error", type=ctx.type.value, severity=ctx.severity)
                if ctx.retryable and attempt < max_retries:
                    delay_ms = self.error_handler.calculate_backoff(attempt)
                    logger.info(f"재시도 대기 {delay_ms}ms: {image_id} (attempt {attempt}/{max_retries})")
                    await self._sleep(delay_ms / 1000)
                    continue
                break

            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"✅ 캐릭터 생성 완료: {image_id} → {character_id} ({duration_ms}ms)")
            await self._count("batch_item_success")
            await self._timing(duration_ms)
            return GenerationResult(
                curated_image_id=image_id,
                success=True,
                character_id=character_id,
                attempts=attempt,
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.error(f"❌ 캐릭터 생성 실패: {image_id} (attempts={attempt}, error={last_error})")
        await self._timing(duration_ms)
        if self.candidate_store is not None:
            try:
                await self.candidate_store.mark_failed(image_id, last_error)
            except Exception as e:
                logger.error(f"후보 실패 상태 기록 실패: {image_id}: {e}")
        return GenerationResult(
            curated_image_id=image_id,
            success=False,
            error=last_error,
            error_type=last_type,
            attempts=attempt,
            duration_ms=duration_ms,
        )

    async def _generate_with_timeout(self, image_id: str, timeout_seconds: float) -> str:
        try:
            return await asyncio.wait_for(self.pipeline.generate(image_id), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise ItemTimeoutError(f"character generation timed out after {timeout_seconds:.0f}s") from None

    async def _finish(self, run: _BatchRun) -> BatchRunSummary:
        summary = run.finalize()
        if self.batch_logs is not None and summary.batch_id:
            await self.batch_logs.finalize(summary.batch_id, summary)
        logger.info(
            f"배치 종료: status={summary.status.value} success={summary.success_count} "
            f"failure={summary.failure_count} duration={summary.duration}s"
            + (f" reason={summary.abort_reason}" if summary.abort_reason else "")
        )
        return summary

    async def _count(self, name: str, **labels: Any) -> None:
        if self.metrics is not None:
            await self.metrics.increment_counter(name, labels=labels or None)

    async def _timing(self, duration_ms: int) -> None:
        if self.metrics is not None:
            await self.metrics.record_timing("batch_item_duration", duration_ms)

    async def get_recent_batches(self, limit: int = 10) -> List[Any]:
        if self.batch_logs is None:
            return []
        return await self.batch_logs.get_recent_batches(limit)

    async def get_batch_stats(self) -> BatchStats:
        if self.batch_logs is None:
            return BatchStats()
        return await self.batch_logs.get_batch_stats()
