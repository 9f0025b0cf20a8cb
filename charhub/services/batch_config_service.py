"""
배치 런타임 설정 - site_configs 값이 있으면 우선, 없으면 환경변수(Settings)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charhub.core.config import Settings, settings as default_settings
from charhub.models import SiteConfig

logger = logging.getLogger(__name__)

KEY_RETRY_ATTEMPTS = "generation.batch_retry_attempts"
KEY_TIMEOUT_MINUTES = "generation.batch_timeout_minutes"
KEY_BATCH_SIZE = "generation.batch_size_per_run"


@dataclass(frozen=True)
class BatchConfig:
    retry_attempts: int = 3
    timeout_minutes: float = 5
    batch_size: int = 24


def _coerce_int(value: Any, default: int, *, lo: int, hi: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


def _coerce_float(value: Any, default: float, *, lo: float, hi: float) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


class BatchConfigService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.settings = settings

    async def _load_overrides(self) -> Dict[str, Any]:
        if self.session_factory is None:
            return {}
        keys = (KEY_RETRY_ATTEMPTS, KEY_TIMEOUT_MINUTES, KEY_BATCH_SIZE)
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(SiteConfig.key, SiteConfig.value).where(SiteConfig.key.in_(keys))
            )).all()
        return {k: v for k, v in rows}

    async def get_batch_config(self) -> BatchConfig:
        overrides = await self._load_overrides()
        s = self.settings
        # 범위는 관리 화면의 허용 범위와 동일
        config = BatchConfig(
            retry_attempts=_coerce_int(overrides.get(KEY_RETRY_ATTEMPTS, s.BATCH_RETRY_ATTEMPTS), s.BATCH_RETRY_ATTEMPTS, lo=1, hi=10),
            timeout_minutes=_coerce_float(overrides.get(KEY_TIMEOUT_MINUTES, s.BATCH_TIMEOUT_MINUTES), s.BATCH_TIMEOUT_MINUTES, lo=0.01, hi=60),
            batch_size=_coerce_int(overrides.get(KEY_BATCH_SIZE, s.BATCH_SIZE_PER_RUN), s.BATCH_SIZE_PER_RUN, lo=1, hi=100),
        )
        if overrides:
            logger.info(f"배치 설정 오버라이드 적용: {overrides}")
        return config
