"""
배치 에러 핸들러 - 에러 분류 / 재시도 판단 / 백오프 / 중단 판단

분류 규칙은 메시지(소문자) 부분 문자열 매칭이며 먼저 매칭된 규칙이 이긴다.
주의: 1번 규칙(network)이 "timeout" 을 먼저 잡기 때문에 "timeout" 이 들어간
메시지는 network 로 분류되고, timeout 은 "timed out" 만 있는 메시지에서만 나온다.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from charhub.schemas.batch import BatchErrorType, ErrorContext, ErrorStats, Severity

logger = logging.getLogger(__name__)

# (타입, 키워드) - 순서 중요
CLASSIFICATION_RULES: tuple[tuple[BatchErrorType, tuple[str, ...]], ...] = (
    (BatchErrorType.NETWORK, ("network", "econnrefused", "timeout")),
    (BatchErrorType.API, ("api", "429", "rate limit")),
    (BatchErrorType.DATABASE, ("database", "sqlalchemy", "connection")),
    (BatchErrorType.VALIDATION, ("validation", "invalid", "required")),
    (BatchErrorType.TIMEOUT, ("timeout", "timed out")),
)

RETRYABLE_TYPES = frozenset({
    BatchErrorType.NETWORK,
    BatchErrorType.API,
    BatchErrorType.DATABASE,
    BatchErrorType.TIMEOUT,
})

ITEM_ERROR_ALERT_THRESHOLD = 5
ABORT_ERROR_RATE = 0.5
ABORT_CONSECUTIVE_ERRORS = 10


class ErrorRecorder(Protocol):
    """에러 영구 기록 (DB/외부 로깅 등)"""

    def record(self, error: BaseException, context: ErrorContext, metadata: Optional[Dict[str, Any]] = None) -> None: ...


class LoggingErrorRecorder:
    def record(self, error: BaseException, context: ErrorContext, metadata: Optional[Dict[str, Any]] = None) -> None:
        logger.warning(
            f"[batch-error] type={context.type.value} severity={context.severity} "
            f"retryable={context.retryable} error={error!s} meta={metadata or {}}"
        )


def error_message(error: BaseException) -> str:
    msg = str(error)
    return msg if msg else type(error).__name__


class BatchErrorHandler:
    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        recorder: Optional[ErrorRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.recorder: ErrorRecorder = recorder or LoggingErrorRecorder()
        self._clock = clock
        self.error_counts: Dict[str, int] = {}
        self.last_error_time: Dict[str, float] = {}

    def handle_error(
        self,
        error: BaseException,
        *,
        item_id: Optional[str] = None,
        operation: Optional[str] = None,
        attempt: int = 1,
    ) -> ErrorContext:
        """에러를 분류하고 재시도 여부/심각도를 결정한다."""
        error_type = self.classify_error(error)
        retryable = self.is_retryable(error_type, attempt)
        severity = self.get_severity(error_type, retryable)

        if item_id:
            self._track_error(item_id)

        ctx = ErrorContext(
            type=error_type,
            retryable=retryable,
            severity=severity,
            suggested_action=self.get_suggested_action(error_type, retryable),
        )

        logger.error(
            f"배치 작업 에러: {error_message(error)} "
            f"(type={error_type.value}, retryable={retryable}, severity={severity}, "
            f"item={item_id}, operation={operation}, attempt={attempt})"
        )
        self.recorder.record(error, ctx, {"item_id": item_id, "operation": operation, "attempt": attempt})
        return ctx

    @staticmethod
    def classify_error(error: BaseException) -> BatchErrorType:
        message = error_message(error).lower()
        for error_type, keywords in CLASSIFICATION_RULES:
            if any(k in message for k in keywords):
                return error_type
        return BatchErrorType.UNKNOWN

    def is_retryable(self, error_type: BatchErrorType, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return error_type in RETRYABLE_TYPES

    @staticmethod
    def get_severity(error_type: BatchErrorType, retryable: bool) -> Severity:
        if not retryable:
            if error_type in (BatchErrorType.DATABASE, BatchErrorType.API):
                return "critical"
            return "high"
        if error_type in (BatchErrorType.NETWORK, BatchErrorType.TIMEOUT):
            return "low"
        return "medium"

    @staticmethod
    def get_suggested_action(error_type: BatchErrorType, retryable: bool) -> str:
        if not retryable:
            return "Skip this item and continue with next"
        return {
            BatchErrorType.NETWORK: "Retry with exponential backoff",
            BatchErrorType.API: "Wait for rate limit reset and retry",
            BatchErrorType.DATABASE: "Retry after connection recovery",
            BatchErrorType.TIMEOUT: "Retry with longer timeout",
        }.get(error_type, "Log and continue")

    def calculate_backoff(self, attempt: int) -> int:
        """지수 백오프(ms): base * 2^(attempt-1)"""
        return self.backoff_base_ms * 2 ** (max(attempt, 1) - 1)

    def _track_error(self, key: str) -> None:
        count = self.error_counts.get(key, 0) + 1
        self.error_counts[key] = count
        self.last_error_time[key] = self._clock()
        if count >= ITEM_ERROR_ALERT_THRESHOLD:
            logger.warning(f"아이템 에러 누적 {count}회: {key}")

    def get_error_stats(self) -> ErrorStats:
        top = sorted(self.error_counts.items(), key=lambda kv: kv[1], reverse=True)[:10]
        return ErrorStats(
            total_errors=sum(self.error_counts.values()),
            unique_errors=len(self.error_counts),
            top_errors=[{"key": k, "count": n} for k, n in top],
        )

    def clear_errors(self) -> None:
        self.error_counts.clear()
        self.last_error_time.clear()
        logger.info("에러 추적 초기화")

    # 배치 실행마다 오케스트레이터가 호출
    reset = clear_errors

    @staticmethod
    def should_abort_batch(error_rate: float, consecutive_errors: int) -> bool:
        if error_rate > ABORT_ERROR_RATE:
            logger.warning(f"에러율 {error_rate:.2f} > {ABORT_ERROR_RATE} - 배치 중단")
            return True
        if consecutive_errors >= ABORT_CONSECUTIVE_ERRORS:
            logger.warning(f"연속 에러 {consecutive_errors}회 - 배치 중단")
            return True
        return False
