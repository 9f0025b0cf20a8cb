"""
모델 패키지
"""

from .character import Character
from .curated_image import CuratedImage, CurationStatus, AgeRating
from .batch_log import BatchGenerationLog
from .site_config import SiteConfig

__all__ = [
    "Character",
    "CuratedImage",
    "CurationStatus",
    "AgeRating",
    "BatchGenerationLog",
    "SiteConfig",
]
