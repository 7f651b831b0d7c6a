"""
Exception taxonomy for the extraction pipeline.

Provider errors carry a `retryable` flag that the runner consults before
scheduling another attempt. Only required-step exhaustion surfaces as a
job-level failure; everything in the ProviderError branch stays inside the
step boundary.
"""


class ExtractionError(Exception):
    """Base exception for all listing extractor errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Provider errors (raised by Provider Clients)
# =============================================================================


class ProviderError(ExtractionError):
    """A provider call failed."""

    retryable: bool = False

    def __init__(self, message: str, provider: str | None = None, details: dict | None = None):
        self.provider = provider
        super().__init__(message, details)


class ProviderUnavailable(ProviderError):
    """Provider timed out, refused the connection or returned a 5xx."""

    retryable = True


class RateLimited(ProviderError):
    """Provider rejected the call because of its quota."""

    retryable = True

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
        details: dict | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, provider, details)


class NotFound(ProviderError):
    """Provider has nothing for this entity. Retrying will not help."""


# =============================================================================
# Pipeline errors
# =============================================================================


class MappingError(ExtractionError):
    """A provider returned a payload the step's mapping could not handle."""

    retryable = False


class PersistenceError(ExtractionError):
    """Job Store write failed after its own retries."""

    def __init__(self, message: str, original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message)


class AlreadyExists(ExtractionError):
    """A non-override start targeted an entity with a running or completed job."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Extraction {job_id} already exists with status '{status}'",
            {"job_id": job_id, "status": status},
        )


class JobNotFound(ExtractionError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Extraction job {job_id} not found", {"job_id": job_id})


class UnknownEntityType(ExtractionError):
    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"No step registry for entity type '{entity_type}'")
