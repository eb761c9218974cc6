"""Service error hierarchy.

Every error knows the HTTP status it maps to and whether the request queue
may retry the work that raised it. ``to_dict`` gives the response body shape
shared by HTTP handlers and internal callers: ``{error, status, details}``.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base exception for all typed service errors."""

    status_code: int = 500
    error: str = "Internal server error"
    retryable: bool = False

    def __init__(self, details: Optional[str] = None, *, error: Optional[str] = None):
        self.details = details or self.error
        if error:
            self.error = error
        super().__init__(self.details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "status": self.status_code,
            "details": self.details,
        }


class ValidationError(ServiceError):
    """Bad identifier or request body."""

    status_code = 400
    error = "Invalid request"


class NotFoundError(ServiceError):
    """Upstream reports the resource does not exist."""

    status_code = 404
    error = "Data Not Found"


class FetchTimeoutError(ServiceError):
    """Fetch or parse exceeded its deadline."""

    status_code = 408
    error = "Request timeout"
    retryable = True


class DuplicateJobError(ServiceError):
    status_code = 409
    error = "Job already exists"


class UpstreamDataError(ServiceError):
    """Fetched payload failed validation."""

    status_code = 422
    error = "Invalid upstream data"


class RateLimitedError(ServiceError):
    """Upstream throttling. Retried by the request queue, never inline."""

    status_code = 429
    error = "Rate limited by upstream API"
    retryable = True


class StorageError(ServiceError):
    """Cache backend I/O failure on a write path."""

    status_code = 500
    error = "Cache storage failure"
    retryable = True


class UnknownError(ServiceError):
    status_code = 500
    error = "Internal server error"
    retryable = True


class UpstreamUnavailableError(ServiceError):
    """Network failure or 5xx from an upstream API."""

    status_code = 502
    error = "Upstream unavailable"
    retryable = True


class QueueFullError(ServiceError):
    status_code = 503
    error = "Queue is full"
    retryable = True


class QueueStoppedError(ServiceError):
    """The request queue has been shut down and accepts no more work."""

    status_code = 503
    error = "Queue unavailable"
    retryable = True


class JobNotFoundError(NotFoundError):
    error = "Job not found"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class DurableQueueUnavailableError(ServiceError):
    """Durable backend unreachable or rejected our credentials.

    Triggers the permanent switch to the in-process backend.
    """

    status_code = 503
    error = "Durable queue unavailable"
    retryable = True


class DurableQueueError(ServiceError):
    """Durable backend answered with a server error; worth retrying."""

    status_code = 502
    error = "Durable queue error"
    retryable = True


def as_service_error(exc: BaseException) -> ServiceError:
    """Typed errors pass through; anything else is an UnknownError, which retries."""
    if isinstance(exc, ServiceError):
        return exc
    return UnknownError(f"{type(exc).__name__}: {exc}")
