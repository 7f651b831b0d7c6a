"""
Pipeline Runner: executes a Job Record's steps in dependency order.

Per execution:
1. Load the Job Record; reset it (override) or reopen unfinished steps (resume).
2. Start every pending step whose dependencies are completed or skipped,
   up to `step_concurrency` at a time.
3. Each step: running -> provider call with retry/backoff -> raw output
   persisted -> mapping merged into the draft -> completed. Exhaustion marks
   a required step failed and an optional step skipped.
4. Repeat until nothing is ready, then settle the job status.

Every transition is written through `JobStore.save` while holding the job's
lock, so step states of one job are persisted strictly in order. The
cancellation flag is read at step boundaries only; a running step is never
interrupted.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from listing_extractor.core.config import settings
from listing_extractor.core.exceptions import ExtractionError, MappingError, NotFound, ProviderError
from listing_extractor.core.logging import emit_job_event, enrich_event, init_job_event
from listing_extractor.core.models import JobRecord, JobStatus, StepState, StepStatus, utcnow
from listing_extractor.pipeline.merge import DataMapper
from listing_extractor.pipeline.rate_limiter import ProviderRateLimiter
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.registry import StepDefinition, StepRegistry
from listing_extractor.pipeline.store import JobStore
from listing_extractor.providers.base import ProviderClient

logger = structlog.get_logger()

# Step states reopened by a resume
RESUMABLE = frozenset({StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.RUNNING})


class PipelineRunner:
    """Drives one Job Record at a time through its entity type's registry."""

    def __init__(
        self,
        store: JobStore,
        providers: Mapping[str, ProviderClient],
        rate_limiter: ProviderRateLimiter | None = None,
        mapper: DataMapper | None = None,
        step_concurrency: int | None = None,
        registry_lookup: Callable[[Any], StepRegistry] = get_registry,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.providers = dict(providers)
        self.rate_limiter = rate_limiter or ProviderRateLimiter(
            default_limit=settings.provider_max_in_flight, limits=settings.provider_limits
        )
        self.mapper = mapper or DataMapper()
        self.step_concurrency = max(1, step_concurrency or settings.step_concurrency)
        self.registry_lookup = registry_lookup
        self.sleep = sleep

    async def execute_extraction(self, job_id: str, override: bool = False) -> JobRecord:
        """
        Run (or resume) a job until no step is ready.

        Returns the final Job Record. Only PersistenceError (and programming
        errors) escape; provider failures stay inside the step boundary.
        """
        record = await self.store.require(job_id)
        registry = self.registry_lookup(record.entity_type)
        log = logger.bind(job_id=job_id, entity_type=record.entity_type.value)

        init_job_event(job_id, record.entity_type.value, override)
        enrich_event(entity_key=record.entity_key, total_steps=len(registry))

        try:
            record = await self._prepare(record, registry, override, log)
            outcome = await self._run(record, registry, log)
        except Exception as e:
            log.error("Extraction run aborted", error=str(e), error_type=type(e).__name__)
            emit_job_event("error", error=e)
            raise

        enrich_event(
            status=record.status.value,
            completed_steps=sum(1 for s in record.steps.values() if s.status == StepStatus.COMPLETED),
            draft_fields=len(record.draft),
        )
        emit_job_event(outcome)
        return record

    # -------------------------------------------------------------------------
    # Preparation
    # -------------------------------------------------------------------------

    async def _prepare(
        self,
        record: JobRecord,
        registry: StepRegistry,
        override: bool,
        log: structlog.BoundLogger,
    ) -> JobRecord:
        if override:
            record.steps = {name: StepState() for name in registry.names}
            record.draft = {}
            record.draft_sources = {}
            record.raw_outputs = {}
            record.status = JobStatus.PENDING
            record.error_message = None
            record.started_at = None
            record.completed_at = None
            log.info("Override: job reset", steps=len(registry))
        else:
            reopened = []
            for name in registry.names:
                state = record.steps.get(name)
                if state is None or state.status in RESUMABLE:
                    record.steps[name] = StepState()
                    reopened.append(name)
            # Steps no longer declared by the registry
            for name in set(record.steps) - set(registry.names):
                del record.steps[name]
            if reopened:
                record.status = JobStatus.PENDING
                record.error_message = None
                record.completed_at = None
                log.info("Resuming job", reopened=reopened)
            enrich_event(reopened_steps=reopened)

        record.cancel_requested = False
        await self.store.clear_cancel(record.id)
        return await self.store.save(record)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def _run(self, record: JobRecord, registry: StepRegistry, log: structlog.BoundLogger) -> str:
        lock = asyncio.Lock()
        in_flight: dict[asyncio.Task, str] = {}
        failed_required: str | None = None
        cancelled = False
        first_error: BaseException | None = None

        while True:
            if failed_required is None and not cancelled and first_error is None:
                if await self.store.is_cancel_requested(record.id):
                    cancelled = True
                    log.info("Cancellation observed, no further steps will start")
                else:
                    for step in registry.ready(record.steps, exclude=in_flight.values()):
                        if len(in_flight) >= self.step_concurrency:
                            break
                        task = asyncio.create_task(self._run_step(record, registry, step, lock, log))
                        in_flight[task] = step.name

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = in_flight.pop(task)
                if task.exception() is not None:
                    # Persistence failure: let the other steps land, then surface it
                    first_error = first_error or task.exception()
                    continue
                if record.steps[name].status == StepStatus.FAILED and registry.get(name).required:
                    failed_required = failed_required or name

        if first_error is not None:
            raise first_error

        async with lock:
            if cancelled:
                record.cancel_requested = True
                await self.store.save(record)
                return "cancelled"
            return await self._settle(record, registry, failed_required, log)

    async def _settle(
        self,
        record: JobRecord,
        registry: StepRegistry,
        failed_required: str | None,
        log: structlog.BoundLogger,
    ) -> str:
        """Final job status from the required steps."""
        pending_required = [
            name for name in registry.required_names if record.steps[name].status != StepStatus.COMPLETED
        ]

        if failed_required is not None:
            error = record.steps[failed_required].error
            record.status = JobStatus.FAILED
            record.error_message = f"Required step '{failed_required}' failed: {error}"
            record.completed_at = utcnow()
            log.warning("Job failed", step=failed_required, error=error)
        elif pending_required:
            record.status = JobStatus.FAILED
            record.error_message = f"Required steps could not run: {', '.join(pending_required)}"
            record.completed_at = utcnow()
            log.warning("Job failed, required steps unreachable", steps=pending_required)
        else:
            if record.status != JobStatus.COMPLETED:
                record.completed_at = utcnow()
            record.status = JobStatus.COMPLETED
            record.error_message = None
            log.info("Job completed", draft_fields=len(record.draft))

        await self.store.save(record)
        return record.status.value

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    async def _run_step(
        self,
        record: JobRecord,
        registry: StepRegistry,
        step: StepDefinition,
        lock: asyncio.Lock,
        job_log: structlog.BoundLogger,
    ) -> None:
        log = job_log.bind(step=step.name)
        state = record.steps[step.name]

        async with lock:
            state.status = StepStatus.RUNNING
            state.started_at = utcnow()
            state.completed_at = None
            state.error = None
            state.attempts = 0
            if record.status != JobStatus.PROCESSING:
                record.status = JobStatus.PROCESSING
                record.started_at = record.started_at or utcnow()
            await self.store.save(record)
        log.info("Step started", provider=step.provider, required=step.required)

        try:
            payload = step.build_input(record.seed, record.draft, record.raw_outputs)
        except Exception as e:
            await self._finish_failed(record, step, MappingError(f"Could not build step input: {e}"), lock, log)
            return

        if payload is None:
            if step.required:
                await self._finish_failed(record, step, NotFound("No input available for this step"), lock, log)
            else:
                await self._finish_skipped_without_input(record, step, lock, log)
            return

        try:
            raw_output = payload if step.is_local else await self._fetch(step, payload, state, log)
        except ProviderError as e:
            await self._finish_failed(record, step, e, lock, log)
            return

        async with lock:
            # Raw output is durable before mapping so a mapping bug can be replayed later
            record.raw_outputs[step.name] = raw_output
            await self.store.save(record)

            try:
                patch = self.mapper.map_step(step, raw_output, record.draft)
            except MappingError as e:
                await self._mark_failed(record, step, e, log)
                return

            merged = self.mapper.merge_step(registry, step, record.draft, record.draft_sources, patch)
            state.status = StepStatus.COMPLETED
            state.completed_at = utcnow()
            await self.store.save(record)

        enrich_event(**{f"steps.{step.name}": {"status": "completed", "attempts": state.attempts}})
        log.info("Step completed", applied=merged.applied, kept=merged.kept, attempts=state.attempts)

    async def _fetch(
        self,
        step: StepDefinition,
        payload: dict[str, Any],
        state: StepState,
        log: structlog.BoundLogger,
    ) -> Any:
        """Call the step's provider, retrying retryable errors per the step's policy."""
        provider = self.providers.get(step.provider)
        if provider is None:
            raise ProviderError(f"No client configured for provider '{step.provider}'", provider=step.provider)

        policy = step.retry
        for attempt in range(1, policy.max_attempts + 1):
            state.attempts = attempt
            try:
                async with self.rate_limiter.slot(step.provider):
                    return await provider.fetch(payload)
            except ProviderError as e:
                if not e.retryable or attempt >= policy.max_attempts:
                    raise
                delay = policy.delay_for(attempt, getattr(e, "retry_after", None))
                log.warning(
                    "Provider call failed, retrying",
                    error=str(e),
                    error_type=type(e).__name__,
                    attempt=attempt,
                    delay=round(delay, 2),
                )
                await self.sleep(delay)
            except Exception as e:
                raise ProviderError(
                    f"Unexpected {type(e).__name__} from provider: {e}",
                    provider=step.provider,
                    details={"error_type": type(e).__name__},
                ) from e

        raise RuntimeError("Unexpected retry loop exit")

    async def _finish_failed(
        self,
        record: JobRecord,
        step: StepDefinition,
        error: ExtractionError,
        lock: asyncio.Lock,
        log: structlog.BoundLogger,
    ) -> None:
        async with lock:
            await self._mark_failed(record, step, error, log)

    async def _mark_failed(
        self,
        record: JobRecord,
        step: StepDefinition,
        error: ExtractionError,
        log: structlog.BoundLogger,
    ) -> None:
        """Exhausted step: required -> failed, optional -> skipped with the error kept. Caller holds the lock."""
        state = record.steps[step.name]
        state.status = StepStatus.FAILED if step.required else StepStatus.SKIPPED
        state.error = str(error)
        state.completed_at = utcnow()
        await self.store.save(record)

        enrich_event(
            **{
                f"steps.{step.name}": {
                    "status": state.status.value,
                    "attempts": state.attempts,
                    "error_type": type(error).__name__,
                }
            }
        )
        if step.required:
            log.error("Required step failed", error=str(error), error_type=type(error).__name__)
        else:
            log.warning("Optional step skipped", error=str(error), error_type=type(error).__name__)

    async def _finish_skipped_without_input(
        self,
        record: JobRecord,
        step: StepDefinition,
        lock: asyncio.Lock,
        log: structlog.BoundLogger,
    ) -> None:
        async with lock:
            state = record.steps[step.name]
            state.status = StepStatus.SKIPPED
            state.completed_at = utcnow()
            await self.store.save(record)
        enrich_event(**{f"steps.{step.name}": {"status": "skipped", "attempts": 0}})
        log.info("Step skipped, nothing to fetch")
