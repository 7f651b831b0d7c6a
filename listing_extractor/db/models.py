"""
SQLAlchemy ORM models for the listing extractor.

One row per Job Record. Step states, the draft, its source tags and the raw
provider payloads are JSON documents on the row, so a transition is always a
single-row write.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from listing_extractor.core.models import JobRecord, JobStatus, utcnow
from listing_extractor.db.database import Base


class TimestampMixin:
    """Mixin for created_at and updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )


class ExtractionJobModel(Base, TimestampMixin):
    """Extraction job (Job Record) for one business entity."""

    __tablename__ = "extraction_jobs"
    __table_args__ = (
        # One job per entity identity; concurrent starts race on this constraint
        UniqueConstraint("entity_type", "entity_key", name="uq_extraction_jobs_entity"),
        Index("idx_extraction_jobs_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(255), nullable=False)

    # Status
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    # Seed input as submitted by the trigger or bulk row
    seed: Mapped[dict | None] = mapped_column(JSON)

    # step name -> {status, started_at, completed_at, error, attempts}
    steps: Mapped[dict | None] = mapped_column(JSON)

    # Accumulated draft fields and field -> source tag
    draft: Mapped[dict | None] = mapped_column(JSON)
    draft_sources: Mapped[dict | None] = mapped_column(JSON)

    # step name -> verbatim provider payload, kept for audit and re-mapping
    raw_outputs: Mapped[dict | None] = mapped_column(JSON)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def apply(self, record: JobRecord) -> None:
        """
        Copy a Job Record onto this row (fresh containers so JSON changes are detected).

        `cancel_requested` is left alone: it is only written through the
        dedicated flag updates so a concurrent cancel is never overwritten.
        """
        data: dict[str, Any] = record.model_dump(mode="json")
        self.entity_type = data["entity_type"]
        self.entity_key = data["entity_key"]
        self.status = data["status"]
        self.error_message = data["error_message"]
        self.seed = data["seed"]
        self.steps = data["steps"]
        self.draft = data["draft"]
        self.draft_sources = data["draft_sources"]
        self.raw_outputs = data["raw_outputs"]
        self.started_at = record.started_at
        self.completed_at = record.completed_at
        self.updated_at = record.updated_at

    def to_record(self) -> JobRecord:
        return JobRecord(
            id=self.id,
            entity_type=self.entity_type,
            entity_key=self.entity_key,
            status=self.status,
            seed=self.seed or {},
            steps=self.steps or {},
            draft=self.draft or {},
            draft_sources=self.draft_sources or {},
            raw_outputs=self.raw_outputs or {},
            error_message=self.error_message,
            cancel_requested=bool(self.cancel_requested),
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_at=self.created_at or utcnow(),
            updated_at=self.updated_at,
        )
