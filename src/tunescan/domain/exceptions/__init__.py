"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). Don't raise this directly - always use a specific subclass so callers
    # (worker loop, enqueue contract) can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationError(DomainException):
    """Input validation failed.

    HTTP Status: 422
    """

    pass


class JobPayloadValidationError(ValidationError):
    """Raised when an enqueue payload does not match its job type schema.

    Rejected synchronously - the job never enters the queue.
    """

    def __init__(
        self,
        job_type: str,
        errors: list[dict[str, Any]] | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"Invalid payload for job type '{job_type}'")
        self.job_type = job_type
        self.errors = errors or []


class ScanQueueFullError(DomainException):
    """Raised by the scan enqueue contract when the job queue applies backpressure.

    This is NOT a generic failure: callers should map it to "retry later"
    (HTTP 429), never to a 500.

    HTTP Status: 429
    """

    def __init__(self, message: str = "Scan queue is full. Please retry later.") -> None:
        super().__init__(message)


# =============================================================================
# Job execution errors
# Hey future me - the worker loop routes on these classes!
# - JobExecutionError: fatal for THIS attempt, retried with backoff up to max_attempts
# - NonRetryableJobError: fatal for the job, goes straight to terminal 'failed'
# Anything else raised by a handler is treated like JobExecutionError.
# =============================================================================


class JobExecutionError(DomainException):
    """A job attempt failed; the retry policy decides what happens next."""

    pass


class NonRetryableJobError(DomainException):
    """A job failed in a way that retrying cannot fix."""

    pass


class ScanRootUnreadableError(JobExecutionError):
    """The scan root directory could not be opened."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot open scan root {path}: {reason}")
        self.path = path


class ScanTimeoutError(JobExecutionError):
    """A scan exceeded its runtime budget."""

    def __init__(self, elapsed_seconds: float, budget_seconds: float) -> None:
        super().__init__(
            f"Scan job exceeded max runtime ({elapsed_seconds:.1f}s > {budget_seconds:.1f}s)"
        )
        self.elapsed_seconds = elapsed_seconds
        self.budget_seconds = budget_seconds


class PathEscapeError(NonRetryableJobError):
    """The resolved scan root lies outside every allowed root."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Scan path is outside allowed roots: {path}")
        self.path = path


class ScanRunNotFoundError(NonRetryableJobError):
    """A scan.directory job has no scan run to report into."""

    def __init__(self, scan_id: str) -> None:
        super().__init__(f"No scan run {scan_id} for this job")
        self.scan_id = scan_id


class LeaseLostError(JobExecutionError):
    """Another worker reclaimed the job while this one was still running it."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Lease on job {job_id} was lost")
        self.job_id = job_id


# Hey future me - surfaces on the first batch flush. Retrying cannot fix a DATABASE_URL that
# points at an engine without an upsert, so the job fails for good.
class UnsupportedDatabaseError(NonRetryableJobError):
    """The configured database dialect is not supported."""

    def __init__(self, dialect: str) -> None:
        super().__init__(
            f"Database dialect '{dialect}' is not supported (use sqlite or postgresql)"
        )
        self.dialect = dialect


__all__ = [
    "DomainException",
    "EntityNotFoundException",
    "JobExecutionError",
    "JobPayloadValidationError",
    "LeaseLostError",
    "NonRetryableJobError",
    "PathEscapeError",
    "ScanQueueFullError",
    "ScanRootUnreadableError",
    "ScanRunNotFoundError",
    "ScanTimeoutError",
    "UnsupportedDatabaseError",
    "ValidationError",
]
