"""
Health check endpoints.
"""

from fastapi import APIRouter

from listing_extractor.core.config import settings

router = APIRouter()


@router.get("/api/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "healthy", "version": settings.app_version}
