"""
Job Store: persistence of Job Records.

Every transition goes through `save()`, which writes the complete record in a
single transaction, so a Step State is never half-written. Writes are retried
with backoff before surfacing as PersistenceError.
"""

import uuid
from datetime import timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_extractor.core.config import settings
from listing_extractor.core.exceptions import AlreadyExists, JobNotFound, PersistenceError
from listing_extractor.core.models import EntityType, JobRecord, JobStatus, StepState, utcnow
from listing_extractor.db.models import ExtractionJobModel
from listing_extractor.pipeline.retry import with_retries

logger = structlog.get_logger()


class _DuplicateEntity(Exception):
    """Insert lost the race for an entity identity. Not retried."""


class JobStore:
    """Reads and writes Job Records through an async session factory."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
    ):
        if session_maker is None:
            from listing_extractor.db.database import async_session_maker

            session_maker = async_session_maker
        self.session_maker = session_maker
        self.max_attempts = max_attempts or settings.persistence_max_attempts
        self.backoff_base = settings.persistence_backoff_seconds if backoff_base is None else backoff_base
        self.log = logger.bind(component="JobStore")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(
        self,
        entity_type: EntityType,
        entity_key: str,
        seed: dict,
        step_names: list[str],
    ) -> JobRecord:
        """Create a pending Job Record with every step pending.

        Raises AlreadyExists when another job holds the same entity identity.
        """
        record = JobRecord(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_key=entity_key,
            seed=dict(seed),
            steps={name: StepState() for name in step_names},
        )
        try:
            await self._write(record, insert=True)
        except _DuplicateEntity:
            existing = await self.find_by_entity(entity_type, entity_key)
            if existing is None:
                raise PersistenceError(f"Job for {entity_type.value}/{entity_key} conflicted but cannot be read")
            self.log.info("Job already exists", job_id=existing.id, entity_key=entity_key)
            raise AlreadyExists(existing.id, existing.status.value)
        self.log.info("Job created", job_id=record.id, entity_type=entity_type.value, entity_key=entity_key)
        return record

    async def save(self, record: JobRecord) -> JobRecord:
        """Persist the full record atomically (the transition + persist primitive)."""
        record.updated_at = utcnow()
        await self._write(record, insert=False)
        return record

    async def request_cancel(self, job_id: str) -> None:
        await self.set_cancel_requested(job_id, True)
        self.log.info("Cancellation requested", job_id=job_id)

    async def clear_cancel(self, job_id: str) -> None:
        await self.set_cancel_requested(job_id, False)

    async def set_cancel_requested(self, job_id: str, value: bool) -> None:
        """Write only the cancellation flag; full-record saves never touch it."""

        async def _do() -> int:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(ExtractionJobModel)
                    .where(ExtractionJobModel.id == job_id)
                    .values(cancel_requested=value, updated_at=utcnow())
                )
                await session.commit()
                return result.rowcount

        if not await self._retrying(_do):
            raise JobNotFound(job_id)

    async def _write(self, record: JobRecord, insert: bool) -> None:
        async def _do() -> None:
            async with self.session_maker() as session:
                if insert:
                    row = ExtractionJobModel(id=record.id, created_at=record.created_at)
                    session.add(row)
                else:
                    row = await session.get(ExtractionJobModel, record.id)
                    if row is None:
                        raise JobNotFound(record.id)
                row.apply(record)
                try:
                    await session.commit()
                except IntegrityError as e:
                    if insert:
                        raise _DuplicateEntity(record.entity_key) from e
                    raise

        await self._retrying(_do)

    async def _retrying(self, func):
        try:
            return await with_retries(
                func,
                max_attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                retry_on=(SQLAlchemyError,),
            )
        except SQLAlchemyError as e:
            self.log.error("Job store write failed", error=str(e))
            raise PersistenceError(f"Job store write failed: {e}", original_error=e) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, job_id: str) -> JobRecord | None:
        async with self.session_maker() as session:
            row = await session.get(ExtractionJobModel, job_id)
            return row.to_record() if row else None

    async def require(self, job_id: str) -> JobRecord:
        record = await self.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    async def find_by_entity(self, entity_type: EntityType, entity_key: str) -> JobRecord | None:
        """Latest job for an entity identity."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExtractionJobModel)
                .where(
                    ExtractionJobModel.entity_type == entity_type.value,
                    ExtractionJobModel.entity_key == entity_key,
                )
                .order_by(ExtractionJobModel.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return row.to_record() if row else None

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExtractionJobModel.cancel_requested).where(ExtractionJobModel.id == job_id)
            )
            return bool(result.scalar_one_or_none())

    async def find_stuck(self, timeout_minutes: int) -> list[JobRecord]:
        """Jobs left `processing` without a write for longer than the timeout."""
        threshold = utcnow() - timedelta(minutes=timeout_minutes)
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExtractionJobModel).where(
                    ExtractionJobModel.status == JobStatus.PROCESSING.value,
                    ExtractionJobModel.cancel_requested.is_(False),
                    ExtractionJobModel.updated_at < threshold,
                )
            )
            return [row.to_record() for row in result.scalars().all()]
