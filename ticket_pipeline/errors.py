"""Error taxonomy for the ingestion and metrics pipeline."""

import traceback
from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    pass


class ValidationError(PipelineError):
    """Bad input for a single item or request."""

    def __init__(self, message: str, field: str | None = None, errors: list[str] | None = None) -> None:
        """Initialize validation error."""
        super().__init__(message)
        self.field = field
        self.errors = errors or ([f"{field}: {message}"] if field else [message])


class RateLimitExceeded(PipelineError):
    """Admission denied by a rate limiter."""

    def __init__(self, retry_after: int, key: str | None = None) -> None:
        """Initialize rate limit error."""
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds")
        self.retry_after = retry_after
        self.key = key


class UnsupportedOperation(PipelineError):
    """Analytics requested on a backend without analytical functions."""

    pass


class ExternalServiceError(PipelineError):
    """Failure talking to the external tracker."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        retry_after: int | None = None,
    ) -> None:
        """Initialize external service error."""
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after


class StorageError(PipelineError):
    """Read or write failure against the storage adapter."""

    pass


class PartialRecordError(PipelineError):
    """One record failed during a sync session."""

    def __init__(self, record_key: str | None, message: str) -> None:
        """Initialize partial record error."""
        super().__init__(f"{record_key or '<unknown>'}: {message}")
        self.record_key = record_key
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"record_key": self.record_key, "error": self.message}


class SyncConflictError(PipelineError):
    """A session for the same project set is already running."""

    def __init__(self, project_set: frozenset[str], session_id: str) -> None:
        """Initialize sync conflict error."""
        super().__init__(f"Sync already running for {sorted(project_set)} (session {session_id})")
        self.project_set = project_set
        self.session_id = session_id


class SyncCancelledError(PipelineError):
    """A running session was cancelled."""

    pass


def describe_error(exc: BaseException, debug: bool = False) -> dict[str, Any]:
    """Build a user-facing error description; detail only in development mode."""
    description: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, ValidationError):
        description["details"] = exc.errors
    if isinstance(exc, RateLimitExceeded):
        description["retry_after"] = exc.retry_after
    if not isinstance(exc, PipelineError):
        # Unexpected errors never leak internals outside development mode
        description["message"] = "Internal server error"
    if debug:
        description["detail"] = str(exc)
        description["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return description
