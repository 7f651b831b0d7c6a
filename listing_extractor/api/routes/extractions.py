"""
Extractions API: trigger, poll, cancel and remap extraction jobs.

Triggering only queues the job; clients poll the status endpoint (every ~2s)
until `status` is `completed` or `failed`.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, status

from listing_extractor.core.models import ExtractionStatus, StartExtractionRequest, StartExtractionResponse
from listing_extractor.service import ExtractionService

logger = structlog.get_logger()
router = APIRouter()


def get_service(request: Request) -> ExtractionService:
    return request.app.state.service


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def start_extraction(
    body: StartExtractionRequest,
    service: Annotated[ExtractionService, Depends(get_service)],
) -> StartExtractionResponse:
    """
    Start (or resume) an extraction.

    A completed or still-running job for the same entity is a 409 unless the
    running job was cancelled first; `override` resets a finished job.
    """
    job_id = await service.start_extraction(body.entity_type, body.seed, override=body.override)
    message = "Extraction restarted" if body.override else "Extraction queued"
    return StartExtractionResponse(job_id=job_id, message=message)


@router.get("/{job_id}")
async def get_extraction_status(
    job_id: str,
    service: Annotated[ExtractionService, Depends(get_service)],
) -> ExtractionStatus:
    return await service.get_extraction_status(job_id)


@router.post("/{job_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_extraction(
    job_id: str,
    service: Annotated[ExtractionService, Depends(get_service)],
) -> ExtractionStatus:
    """Cooperative: the job stops before its next step and can be resumed later."""
    return await service.cancel_extraction(job_id)


@router.post("/{job_id}/remap")
async def remap_extraction(
    job_id: str,
    service: Annotated[ExtractionService, Depends(get_service)],
) -> ExtractionStatus:
    """Rebuild the draft from stored provider payloads without calling providers."""
    return await service.remap_extraction(job_id)
