"""
캐릭터 자동 생성(population) 배치 태스크
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from redis import asyncio as aioredis

from charhub.core.celery_app import celery_app
from charhub.core.config import settings
from charhub.core.database import AsyncSessionLocal, engine
from charhub.schemas.batch import BatchOptions
from charhub.services.ai_service import CharacterAnalysisService
from charhub.services.batch import BatchCharacterGenerator, BatchErrorHandler, DiversificationAlgorithm
from charhub.services.batch_config_service import BatchConfigService
from charhub.services.batch_log_service import SqlBatchLogRepository
from charhub.services.candidate_store import SqlCandidateStore, SqlRecentHistorySource
from charhub.services.character_pipeline import CharacterGenerationPipeline
from charhub.services.metrics_service import MetricsService
from charhub.services.storage import get_storage

logger = logging.getLogger(__name__)


def build_selector(session_factory=AsyncSessionLocal) -> DiversificationAlgorithm:
    return DiversificationAlgorithm(
        SqlCandidateStore(session_factory),
        SqlRecentHistorySource(session_factory),
        pool_multiplier=settings.SELECTION_POOL_MULTIPLIER,
        history_window=settings.RECENT_HISTORY_WINDOW,
    )


def build_generator(session_factory=AsyncSessionLocal, redis_client: Optional[aioredis.Redis] = None) -> BatchCharacterGenerator:
    """운영용 객체 그래프 조립. redis_client 가 없으면 메트릭은 로그로만 남는다"""
    return BatchCharacterGenerator(
        build_selector(session_factory),
        BatchErrorHandler(
            max_retries=settings.BATCH_RETRY_ATTEMPTS,
            backoff_base_ms=settings.BATCH_BACKOFF_BASE_MS,
        ),
        CharacterGenerationPipeline(session_factory, CharacterAnalysisService(), get_storage()),
        config_source=BatchConfigService(session_factory),
        candidate_store=SqlCandidateStore(session_factory),
        batch_logs=SqlBatchLogRepository(session_factory),
        metrics=MetricsService(redis_client),
    )


async def run_population_batch(count: Optional[int] = None, *, delay_between_ms: Optional[int] = None) -> Dict[str, Any]:
    # asyncio.run 마다 루프가 바뀌므로 Redis 클라이언트도 실행 단위로 만든다
    redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    generator = build_generator(redis_client=redis_client)
    target = count if count is not None else settings.BATCH_SIZE_PER_RUN
    options = BatchOptions(
        delay_between_ms=settings.BATCH_DELAY_BETWEEN_MS if delay_between_ms is None else delay_between_ms,
    )
    try:
        summary = await generator.run_batch(target, options)
    finally:
        await redis_client.aclose()
        await engine.dispose()
    return summary.model_dump(mode="json", exclude={"results"})


@celery_app.task(name="charhub.tasks.population_tasks.run_batch_generation")
def run_batch_generation(count: Optional[int] = None, force: bool = False) -> Dict[str, Any]:
    """beat 로 매일 실행. 비활성 상태면 force 일 때만 실행"""
    if not (settings.BATCH_GENERATION_ENABLED or force):
        logger.info("배치 생성 비활성화 상태 - 건너뜀")
        return {"skipped": True}
    try:
        return asyncio.run(run_population_batch(count))
    except Exception:
        logger.exception("배치 캐릭터 생성 실패")
        raise
