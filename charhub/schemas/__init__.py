"""
스키마 패키지
"""

from .batch import (
    SelectionCriteria,
    SelectionStats,
    QualityStats,
    BatchErrorType,
    ErrorContext,
    ErrorStats,
    BatchStatus,
    BatchOptions,
    GenerationResult,
    BatchRunSummary,
    BatchStats,
)
from .character import ImageAnalysis, CharacterDraft

__all__ = [
    "SelectionCriteria",
    "SelectionStats",
    "QualityStats",
    "BatchErrorType",
    "ErrorContext",
    "ErrorStats",
    "BatchStatus",
    "BatchOptions",
    "GenerationResult",
    "BatchRunSummary",
    "BatchStats",
    "ImageAnalysis",
    "CharacterDraft",
]
