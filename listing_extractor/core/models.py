"""
Core models and types for the listing extractor.

Enums are shared by the ORM layer and the pipeline; the Pydantic models are
the in-memory Job Record, the polling snapshot and the API/bulk schemas.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class EntityType(str, Enum):
    RESTAURANT = "restaurant"
    HOTEL = "hotel"
    MALL = "mall"
    SCHOOL = "school"
    ATTRACTION = "attraction"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that satisfy a dependency edge
DEPENDENCY_MET = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class Source(str, Enum):
    """Where a draft field value came from. Used by the merge priority table."""

    SEED = "seed"
    PLACES = "places"
    WEB_SEARCH = "web_search"
    SOCIAL_SEARCH = "social_search"
    REVIEWS = "reviews"
    IMAGES = "images"
    AI_SENTIMENT = "ai_sentiment"
    AI_ENHANCEMENT = "ai_enhancement"
    DERIVED = "derived"


class BulkOutcome(str, Enum):
    SUCCESS = "success"
    FAILED_SEED_LOOKUP = "failed_seed_lookup"
    FAILED_EXTRACTION = "failed_extraction"
    DUPLICATE = "duplicate"


# =============================================================================
# Base Models
# =============================================================================


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)


# =============================================================================
# Job Record
# =============================================================================


class StepState(BaseSchema):
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    attempts: int = 0


class JobRecord(BaseSchema):
    """One extraction attempt against one entity."""

    id: str
    entity_type: EntityType
    entity_key: str
    status: JobStatus = JobStatus.PENDING
    seed: dict[str, Any] = Field(default_factory=dict)
    steps: dict[str, StepState] = Field(default_factory=dict)
    draft: dict[str, Any] = Field(default_factory=dict)
    draft_sources: dict[str, str] = Field(default_factory=dict)
    raw_outputs: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    cancel_requested: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# =============================================================================
# Polling snapshot
# =============================================================================


class StepSnapshot(BaseSchema):
    name: str
    display_name: str
    required: bool
    status: StepStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    attempts: int = 0


class ExtractionStatus(BaseSchema):
    job_id: str
    entity_type: EntityType
    entity_key: str
    status: JobStatus
    progress_percentage: int = Field(0, ge=0, le=100)
    current_step: str | None = None
    steps: list[StepSnapshot] = Field(default_factory=list)
    draft: dict[str, Any] = Field(default_factory=dict)
    draft_sources: dict[str, str] = Field(default_factory=dict)
    error_message: str | None = None
    cancel_requested: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# API Models
# =============================================================================


class StartExtractionRequest(BaseSchema):
    entity_type: EntityType
    seed: dict[str, Any]
    override: bool = False


class StartExtractionResponse(BaseSchema):
    job_id: str
    message: str = "Extraction queued"


# =============================================================================
# Bulk Driver Models
# =============================================================================


class BulkRowResult(BaseSchema):
    name: str
    outcome: BulkOutcome
    job_id: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0


class BulkSummary(BaseSchema):
    total: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    total_duration_seconds: float = 0.0
    average_duration_seconds: float = 0.0
    failures: list[BulkRowResult] = Field(default_factory=list)
    results: list[BulkRowResult] = Field(default_factory=list)
