"""
arq worker: dequeues extraction jobs and runs the Pipeline Runner.

Start with:
    arq listing_extractor.worker.WorkerSettings
"""

import structlog
from arq.connections import RedisSettings

from listing_extractor.core.config import settings
from listing_extractor.core.logging import configure_logging
from listing_extractor.db import close_db, init_db
from listing_extractor.pipeline.rate_limiter import ProviderRateLimiter
from listing_extractor.pipeline.runner import PipelineRunner
from listing_extractor.pipeline.store import JobStore
from listing_extractor.providers.http import build_http_client, build_http_providers
from listing_extractor.service import RUN_EXTRACTION_JOB

logger = structlog.get_logger()


async def run_extraction(ctx: dict, job_id: str, override: bool = False) -> dict:
    """
    Execute (or resume) one extraction job.

    Args:
        ctx: arq context, populated by `startup`
        job_id: Job Record id
        override: reset every step before running

    Returns:
        Result dict with the final job status
    """
    log = logger.bind(job_id=job_id, job_type="extraction")
    log.info("Extraction job received, starting execution", override=override)

    runner: PipelineRunner = ctx["runner"]
    record = await runner.execute_extraction(job_id, override=override)
    return {
        "status": record.status.value,
        "job_id": record.id,
        "error_message": record.error_message,
    }


async def recover_stuck_jobs(ctx: dict, timeout_minutes: int | None = None) -> int:
    """
    Re-queue jobs left `processing` by a crashed worker.

    The runner reopens their `running` steps on resume, so completed steps are
    kept and only the interrupted work is redone.

    Returns:
        Number of jobs re-queued
    """
    timeout_minutes = timeout_minutes or settings.stuck_job_timeout_minutes
    log = logger.bind(timeout_minutes=timeout_minutes)
    log.info("Checking for stuck extraction jobs")

    store: JobStore = ctx["store"]
    stuck = await store.find_stuck(timeout_minutes)

    recovered = 0
    for record in stuck:
        job = await ctx["redis"].enqueue_job(
            RUN_EXTRACTION_JOB, record.id, False, _job_id=f"extract-{record.id}"
        )
        if job is None:
            log.debug("Stuck job already queued", job_id=record.id)
            continue
        log.warning(
            "Recovered stuck extraction job",
            job_id=record.id,
            entity_type=record.entity_type.value,
            stuck_since=record.updated_at,
        )
        recovered += 1

    if recovered:
        log.info("Recovered stuck extraction jobs", count=recovered)
    else:
        log.debug("No stuck extraction jobs found")
    return recovered


async def startup(ctx: dict) -> None:
    """Initialize the worker context."""
    configure_logging(json_logs=settings.log_json, log_level=settings.log_level)
    logger.info("Starting up worker...")
    await init_db()

    http_client = build_http_client(settings)
    store = JobStore()
    ctx["http_client"] = http_client
    ctx["store"] = store
    ctx["runner"] = PipelineRunner(
        store,
        build_http_providers(settings, http_client),
        rate_limiter=ProviderRateLimiter(settings.provider_max_in_flight, settings.provider_limits),
    )

    await recover_stuck_jobs(ctx)
    logger.info("Worker startup complete.")


async def shutdown(ctx: dict) -> None:
    """Cleanup the worker context."""
    logger.info("Shutting down worker...")
    http_client = ctx.get("http_client")
    if http_client is not None:
        await http_client.aclose()
    await close_db()
    logger.info("Worker shutdown complete.")


class WorkerSettings:
    """arq worker settings."""

    functions = [run_extraction]
    redis_settings = RedisSettings.from_dsn(str(settings.redis_url))
    on_startup = startup
    on_shutdown = shutdown
    handle_signals = False

    max_jobs = settings.worker_max_jobs
    # Extractions take minutes; retries happen per step inside the runner
    job_timeout = 60 * 60
    max_tries = 1
    # Free the deterministic job id as soon as a run ends so the job can be resumed
    keep_result = 0
