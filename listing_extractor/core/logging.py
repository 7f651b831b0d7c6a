"""
Logging configuration with a wide event per extraction run.

Every module logs through structlog. On top of the regular log lines the
pipeline runner builds one comprehensive event per execution attempt
(job, entity type, per-step outcomes, duration) and emits it once at the
end of the run, Stripe "canonical log line" style.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import Processor

# Context variables for the run-scoped wide event
_job_event: ContextVar[dict[str, Any] | None] = ContextVar("job_event", default=None)
_job_start: ContextVar[float] = ContextVar("job_start", default=0.0)


def init_job_event(job_id: str, entity_type: str, override: bool = False) -> dict[str, Any]:
    """Start a new wide event for one execution attempt of a job."""
    event: dict[str, Any] = {
        "job_id": job_id,
        "entity_type": entity_type,
        "override": override,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime()),
        "steps": {},
    }
    _job_event.set(event)
    _job_start.set(time.monotonic())
    return event


def enrich_event(**kwargs: Any) -> None:
    """
    Add fields to the current run's wide event.

    Dotted keys create nested objects:

        enrich_event(**{"steps.places_details": {"status": "completed"}})
    """
    event = _job_event.get()
    if event is None:
        return
    for key, value in kwargs.items():
        if "." in key:
            parts = key.split(".")
            target = event
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        else:
            event[key] = value


def emit_job_event(outcome: str, error: Exception | None = None) -> dict[str, Any]:
    """Finalize and emit the canonical log line for the run."""
    event = _job_event.get() or {}
    event["outcome"] = outcome
    event["duration_ms"] = int((time.monotonic() - _job_start.get()) * 1000)
    if error is not None:
        event["error"] = {"type": type(error).__name__, "message": str(error)[:500]}

    logger = structlog.get_logger("job_event")
    if outcome == "failed" or error is not None:
        logger.warning("extraction_run_finished", **event)
    else:
        logger.info("extraction_run_finished", **event)

    _job_event.set(None)
    return event


def configure_logging(json_logs: bool = True, log_level: str = "INFO") -> None:
    """
    Configure structlog.

    Args:
        json_logs: If True, output JSON format (for production).
                   If False, output colored console format (for development).
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
