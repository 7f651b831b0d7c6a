"""
Progress Reporter: read-only projection of a Job Record for pollers.
"""

from collections.abc import Callable
from typing import Any

from listing_extractor.core.models import ExtractionStatus, JobRecord, StepSnapshot, StepStatus
from listing_extractor.pipeline.registries import get_registry
from listing_extractor.pipeline.registry import StepRegistry
from listing_extractor.pipeline.store import JobStore


def progress_percentage(record: JobRecord, registry: StepRegistry) -> int:
    """Completed required steps over all required steps, rounded."""
    required = registry.required_names
    if not required:
        return 0
    completed = sum(
        1 for name in required if name in record.steps and record.steps[name].status == StepStatus.COMPLETED
    )
    return round(completed / len(required) * 100)


class ProgressReporter:
    """Builds polling snapshots. Never writes."""

    def __init__(self, store: JobStore, registry_lookup: Callable[[Any], StepRegistry] = get_registry):
        self.store = store
        self.registry_lookup = registry_lookup

    async def get_status(self, job_id: str) -> ExtractionStatus:
        record = await self.store.require(job_id)
        return self.snapshot(record)

    def snapshot(self, record: JobRecord) -> ExtractionStatus:
        registry = self.registry_lookup(record.entity_type)
        steps = []
        current_step = None
        for step in registry:
            state = record.steps.get(step.name)
            if state is None:
                continue
            if current_step is None and state.status == StepStatus.RUNNING:
                current_step = step.name
            steps.append(
                StepSnapshot(
                    name=step.name,
                    display_name=step.display_name,
                    required=step.required,
                    status=state.status,
                    started_at=state.started_at,
                    completed_at=state.completed_at,
                    error=state.error,
                    attempts=state.attempts,
                )
            )

        return ExtractionStatus(
            job_id=record.id,
            entity_type=record.entity_type,
            entity_key=record.entity_key,
            status=record.status,
            progress_percentage=progress_percentage(record, registry),
            current_step=current_step,
            steps=steps,
            draft=dict(record.draft),
            draft_sources=dict(record.draft_sources),
            error_message=record.error_message,
            cancel_requested=record.cancel_requested,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
