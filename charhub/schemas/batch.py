"""
배치 캐릭터 생성 관련 Pydantic 스키마
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator

from charhub.models.curated_image import AgeRating


# 🎯 이미지 선택(다양화)

class SelectionCriteria(BaseModel):
    """이미지 선택 조건 (호출마다 생성)"""
    count: int = Field(..., ge=0)
    age_rating_distribution: Optional[Dict[AgeRating, int]] = None

    style_balance: bool = False
    tag_diversity: bool = False
    gender_balance: bool = False
    species_diversity: bool = False

    # 토글이 켜진 경우에만 사용
    max_consecutive_same_gender: int = Field(default=2, ge=1)
    max_consecutive_same_species: int = Field(default=2, ge=1)

    @field_validator('age_rating_distribution')
    @classmethod
    def validate_distribution(cls, v):
        if v is None:
            return v
        for rating, n in v.items():
            if n < 0:
                raise ValueError(f'{rating.value} 등급의 요청 수는 0 이상이어야 합니다.')
        return v


class QualityStats(BaseModel):
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0


class SelectionStats(BaseModel):
    """승인/미할당 후보 풀 통계"""
    total_approved: int = 0
    by_age_rating: Dict[str, int] = Field(default_factory=dict)
    by_gender: Dict[str, int] = Field(default_factory=dict)
    by_species: Dict[str, int] = Field(default_factory=dict)
    recent_quality: QualityStats = Field(default_factory=QualityStats)


# ⚠️ 에러 분류

class BatchErrorType(str, Enum):
    NETWORK = "network"
    API = "api"
    DATABASE = "database"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


Severity = Literal["low", "medium", "high", "critical"]


class ErrorContext(BaseModel):
    """에러 1건에 대한 분류 결과 (저장하지 않음)"""
    model_config = ConfigDict(frozen=True)

    type: BatchErrorType
    retryable: bool
    severity: Severity
    suggested_action: str


class ErrorStats(BaseModel):
    total_errors: int = 0
    unique_errors: int = 0
    top_errors: List[Dict[str, int | str]] = Field(default_factory=list)


# 🏭 배치 실행

class BatchStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    SELECTING = "SELECTING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


class BatchOptions(BaseModel):
    """run_batch 옵션 (없으면 런타임 설정값 사용)"""
    criteria: Optional[SelectionCriteria] = None
    max_retries: Optional[int] = Field(default=None, ge=1)
    timeout_minutes: Optional[float] = Field(default=None, gt=0)
    delay_between_ms: int = Field(default=0, ge=0)
    scheduled_at: Optional[datetime] = None


class GenerationResult(BaseModel):
    """아이템 1건 처리 결과"""
    model_config = ConfigDict(frozen=True)

    curated_image_id: str
    success: bool
    character_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[BatchErrorType] = None
    attempts: int = 0
    duration_ms: Optional[int] = None


class BatchRunSummary(BaseModel):
    """종료된 배치 실행 기록 (불변)"""
    model_config = ConfigDict(frozen=True)

    batch_id: Optional[str] = None
    status: BatchStatus
    abort_reason: Optional[str] = None
    scheduled_at: datetime
    executed_at: Optional[datetime] = None
    completed_at: datetime
    target_count: int
    success_count: int = 0
    failure_count: int = 0
    duration: int = 0  # seconds
    selected_images: List[str] = Field(default_factory=list)
    generated_char_ids: List[str] = Field(default_factory=list)
    results: List[GenerationResult] = Field(default_factory=list)


class BatchStats(BaseModel):
    """누적 배치 통계"""
    total_batches: int = 0
    total_generated: int = 0
    success_rate: float = 0.0
    avg_duration: int = 0
