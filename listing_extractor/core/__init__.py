"""
Core package initialization.
"""

from listing_extractor.core.config import Settings, get_settings, settings
from listing_extractor.core.models import (
    BulkOutcome,
    EntityType,
    ExtractionStatus,
    JobRecord,
    JobStatus,
    Source,
    StepState,
    StepStatus,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "settings",
    # Enums
    "EntityType",
    "JobStatus",
    "StepStatus",
    "Source",
    "BulkOutcome",
    # Models
    "JobRecord",
    "StepState",
    "ExtractionStatus",
]
