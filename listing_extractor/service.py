"""
Extraction service: the trigger / status / cancel / remap operations.

The trigger never runs the pipeline itself. It creates or reopens the Job
Record and hands the id to a dispatcher: `ArqDispatcher` queues it for the
arq worker pool, `InlineDispatcher` runs it as a background task in this
process (local development, tests, the bulk driver). Either way the Job Store
stays the single source of truth observed by polling.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import structlog

from listing_extractor.core.config import settings
from listing_extractor.core.exceptions import AlreadyExists, ExtractionError
from listing_extractor.core.models import EntityType, ExtractionStatus, JobRecord, JobStatus
from listing_extractor.pipeline.mappers import SEED_FIELDS, first_of, slugify
from listing_extractor.pipeline.merge import DataMapper
from listing_extractor.pipeline.progress import ProgressReporter
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.runner import PipelineRunner
from listing_extractor.pipeline.store import JobStore

logger = structlog.get_logger()

RUN_EXTRACTION_JOB = "run_extraction"


def entity_key_for(seed: Mapping[str, Any]) -> str:
    """Stable entity identity: the place id when known, else the slug of the name."""
    place_id = first_of(*(seed.get(key) for key in SEED_FIELDS["google_place_id"]))
    if place_id:
        return str(place_id).strip()
    slug = slugify(first_of(*(seed.get(key) for key in SEED_FIELDS["name"])))
    if not slug:
        raise ExtractionError("Seed needs a name or a place id", {"seed_keys": sorted(seed)})
    return slug


def is_in_flight(record: JobRecord) -> bool:
    """Queued or running, and nobody asked it to stop."""
    return record.status in (JobStatus.PENDING, JobStatus.PROCESSING) and not record.cancel_requested


# =============================================================================
# Dispatchers
# =============================================================================


class Dispatcher(ABC):
    """Hands a job id to whatever executes the Pipeline Runner."""

    @abstractmethod
    async def dispatch(self, job_id: str, override: bool = False) -> bool:
        """Returns False when the job was already queued or running."""

    async def close(self) -> None:
        return None


class ArqDispatcher(Dispatcher):
    """Queue jobs for the arq worker pool."""

    def __init__(self, redis_pool=None, redis_url: str | None = None):
        self._pool = redis_pool
        self.redis_url = redis_url or str(settings.redis_url)

    async def _get_pool(self):
        if self._pool is None:
            from arq import create_pool
            from arq.connections import RedisSettings

            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        return self._pool

    async def dispatch(self, job_id: str, override: bool = False) -> bool:
        pool = await self._get_pool()
        # Deterministic arq id: one job is never queued twice
        job = await pool.enqueue_job(RUN_EXTRACTION_JOB, job_id, override, _job_id=f"extract-{job_id}")
        if job is None:
            logger.warning("Extraction already queued or running", job_id=job_id)
            return False
        logger.info("Extraction queued", job_id=job_id, override=override)
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class InlineDispatcher(Dispatcher):
    """Run jobs as background asyncio tasks in the current process."""

    def __init__(self, runner: PipelineRunner):
        self.runner = runner
        self._tasks: dict[str, asyncio.Task] = {}

    async def dispatch(self, job_id: str, override: bool = False) -> bool:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            logger.warning("Extraction already running in-process", job_id=job_id)
            return False
        task = asyncio.create_task(self._run(job_id, override))
        self._tasks[job_id] = task
        task.add_done_callback(lambda done: self._forget(job_id, done))
        return True

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _run(self, job_id: str, override: bool) -> JobRecord | None:
        try:
            return await self.runner.execute_extraction(job_id, override=override)
        except Exception as e:
            # Background task: nothing awaits it except join()
            logger.exception("In-process extraction crashed", job_id=job_id, error=str(e))
            return None

    async def join(self, job_id: str | None = None) -> None:
        """Wait for one job (or every job) dispatched by this instance."""
        if job_id is not None:
            task = self._tasks.get(job_id)
            if task is not None:
                await task
            return
        if self._tasks:
            await asyncio.gather(*self._tasks.values())

    async def close(self) -> None:
        await self.join()
        self._tasks.clear()


# =============================================================================
# Service
# =============================================================================


class ExtractionService:
    """Trigger, status, cancel and remap for extraction jobs."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        reporter: ProgressReporter | None = None,
        mapper: DataMapper | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.reporter = reporter or ProgressReporter(store)
        self.mapper = mapper or DataMapper()

    async def start_extraction(
        self,
        entity_type: EntityType | str,
        seed: Mapping[str, Any],
        override: bool = False,
    ) -> str:
        """
        Create or reopen the job for an entity and dispatch it.

        Raises:
            UnknownEntityType: no registry for `entity_type`.
            AlreadyExists: the entity has a queued/running job, or a completed
                one and `override` is not set.
        """
        registry = get_registry(entity_type)
        entity_type = registry.entity_type
        entity_key = entity_key_for(seed)
        log = logger.bind(entity_type=entity_type.value, entity_key=entity_key, override=override)

        existing = await self.store.find_by_entity(entity_type, entity_key)
        if existing is None:
            record = await self.store.create(entity_type, entity_key, seed, registry.names)
            await self.dispatcher.dispatch(record.id, override=False)
            log.info("Extraction started", job_id=record.id)
            return record.id

        # A live run must be cancelled before it can be reset or resumed
        if is_in_flight(existing):
            raise AlreadyExists(existing.id, existing.status.value)

        if override:
            existing.seed = dict(seed)
            await self.store.save(existing)
            if not await self.dispatcher.dispatch(existing.id, override=True):
                raise AlreadyExists(existing.id, existing.status.value)
            log.info("Extraction restarted with override", job_id=existing.id)
            return existing.id

        if existing.status == JobStatus.COMPLETED:
            raise AlreadyExists(existing.id, existing.status.value)

        # A cancelled run may still be unwinding; it owns the job until it exits
        if not await self.dispatcher.dispatch(existing.id, override=False):
            raise AlreadyExists(existing.id, existing.status.value)
        log.info("Extraction resumed", job_id=existing.id, previous_status=existing.status.value)
        return existing.id

    async def get_extraction_status(self, job_id: str) -> ExtractionStatus:
        return await self.reporter.get_status(job_id)

    async def cancel_extraction(self, job_id: str) -> ExtractionStatus:
        """Ask the running job to stop at its next step boundary."""
        record = await self.store.require(job_id)
        if record.is_terminal:
            return self.reporter.snapshot(record)
        await self.store.request_cancel(job_id)
        return await self.reporter.get_status(job_id)

    async def remap_extraction(self, job_id: str) -> ExtractionStatus:
        """Rebuild the draft from stored raw outputs with the current mappings (no provider calls)."""
        record = await self.store.require(job_id)
        if is_in_flight(record):
            raise AlreadyExists(record.id, record.status.value)
        registry = get_registry(record.entity_type)
        record.draft, record.draft_sources = self.mapper.rebuild(registry, record.raw_outputs, record.steps)
        await self.store.save(record)
        logger.info("Draft remapped", job_id=job_id, fields=len(record.draft))
        return self.reporter.snapshot(record)
