"""
FastAPI application factory and main entry point.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from listing_extractor.api.routes import extractions, health
from listing_extractor.core.config import settings
from listing_extractor.core.exceptions import (
    AlreadyExists,
    ExtractionError,
    JobNotFound,
    PersistenceError,
    UnknownEntityType,
)
from listing_extractor.core.logging import configure_logging
from listing_extractor.db import close_db, init_db
from listing_extractor.pipeline.runner import PipelineRunner
from listing_extractor.pipeline.store import JobStore
from listing_extractor.providers.http import build_http_client, build_http_providers
from listing_extractor.service import ArqDispatcher, ExtractionService, InlineDispatcher

configure_logging(json_logs=settings.log_json, log_level="DEBUG" if settings.debug else settings.log_level)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger.info("Starting Listing Extractor API", version=settings.app_version)
    await init_db()
    logger.info("Database initialized")

    http_client = None
    if getattr(app.state, "service", None) is None:
        store = JobStore()
        if settings.dispatch_mode == "inline":
            http_client = build_http_client(settings)
            runner = PipelineRunner(store, build_http_providers(settings, http_client))
            dispatcher = InlineDispatcher(runner)
        else:
            dispatcher = ArqDispatcher()
        app.state.service = ExtractionService(store, dispatcher)
        logger.info("Extraction service ready", dispatch_mode=settings.dispatch_mode)

    yield

    logger.info("Shutting down Listing Extractor API")
    await app.state.service.dispatcher.close()
    if http_client is not None:
        await http_client.aclose()
    await close_db()
    logger.info("Database connections closed")


def _error(status_code: int, exc: ExtractionError, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": exc.message,
                "type": error_type,
                "details": exc.details,
            }
        },
    )


def create_app(service: ExtractionService | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Extraction pipeline for local-business listings",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.service = service

    app.include_router(health.router, tags=["Health"])
    app.include_router(extractions.router, prefix="/api/v1/extractions", tags=["Extractions"])

    # Exception Handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle FastAPI validation errors"""
        logger.warning("Validation error", url=str(request.url), errors=exc.errors())
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "message": "Validation failed",
                    "type": "validation_error",
                    "details": exc.errors(),
                }
            },
        )

    @app.exception_handler(AlreadyExists)
    async def conflict_exception_handler(request: Request, exc: AlreadyExists):
        logger.warning("Extraction conflict", url=str(request.url), job_id=exc.job_id, status=exc.status)
        return _error(409, exc, "conflict_error")

    @app.exception_handler(JobNotFound)
    async def not_found_exception_handler(request: Request, exc: JobNotFound):
        logger.info("Job not found", url=str(request.url), job_id=exc.job_id)
        return _error(404, exc, "not_found_error")

    @app.exception_handler(UnknownEntityType)
    async def entity_type_exception_handler(request: Request, exc: UnknownEntityType):
        logger.warning("Unknown entity type", url=str(request.url), entity_type=exc.entity_type)
        return _error(422, exc, "validation_error")

    @app.exception_handler(PersistenceError)
    async def persistence_exception_handler(request: Request, exc: PersistenceError):
        """Handle database errors"""
        logger.error("Job store error", url=str(request.url), error=exc.message)
        return JSONResponse(status_code=503, content={"detail": "Database operation failed"})

    @app.exception_handler(ExtractionError)
    async def app_exception_handler(request: Request, exc: ExtractionError):
        """Remaining application errors are bad input (e.g. a seed without a name)"""
        logger.warning("Extraction request rejected", url=str(request.url), message=exc.message)
        return _error(400, exc, "application_error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error("Unexpected error", url=str(request.url), error=str(exc), exc_info=True)
        detail = str(exc) if settings.debug else "An unexpected error occurred"
        return JSONResponse(status_code=500, content={"detail": detail})

    return app


app = create_app()
