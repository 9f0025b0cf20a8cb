"""
간단 메트릭 수집 유틸(베스트-에포트): Redis 카운터/타이밍 집계 + 로그 출력
프로메테우스 등 외부 도입 전 임시 관측용
"""
from __future__ import annotations

import json
import time
from typing import Dict, Any, Optional

import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)
metrics_logger = logging.getLogger("metrics")


def _labels_to_key(labels: Dict[str, Any]) -> str:
    # 키 길이 제한을 위해 value를 str로 단순화
    items = sorted((str(k), str(v)) for k, v in (labels or {}).items())
    return ":".join([f"{k}={v}" for k, v in items])


class MetricsService:
    """실패해도 예외를 던지지 않는다 (배치 흐름에 영향 X)"""

    def __init__(self, redis: Optional[Redis], *, expire_seconds: int = 86400):
        self.redis = redis
        self.expire_seconds = expire_seconds

    async def increment_counter(self, name: str, *, labels: Dict[str, Any] | None = None) -> None:
        if self.redis is not None:
            try:
                day = time.strftime("%Y%m%d")
                key_base = f"metrics:counter:{name}:{day}"
                lk = _labels_to_key(labels or {})
                key = f"{key_base}:{lk}" if lk else key_base
                await self.redis.incr(key)
                await self.redis.expire(key, self.expire_seconds)
            except Exception as e:
                logger.debug(f"metrics counter 기록 실패: {e}")
        metrics_logger.info(json.dumps({"type": "counter", "name": name, "labels": labels or {}}))

    async def record_timing(self, name: str, value_ms: int | float, *, labels: Dict[str, Any] | None = None) -> None:
        if self.redis is not None:
            try:
                day = time.strftime("%Y%m%d")
                key_base = f"metrics:timing:{name}:{day}"
                lk = _labels_to_key(labels or {})
                # 간단히 sum/count로 집계(평균 계산용)
                sum_key = f"{key_base}:{lk}:sum" if lk else f"{key_base}:sum"
                cnt_key = f"{key_base}:{lk}:cnt" if lk else f"{key_base}:cnt"
                await self.redis.incrbyfloat(sum_key, float(value_ms))
                await self.redis.incr(cnt_key)
                await self.redis.expire(sum_key, self.expire_seconds)
                await self.redis.expire(cnt_key, self.expire_seconds)
            except Exception as e:
                logger.debug(f"metrics timing 기록 실패: {e}")
        metrics_logger.info(json.dumps({"type": "timing", "name": name, "value_ms": float(value_ms), "labels": labels or {}}))
