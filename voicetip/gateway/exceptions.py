from typing import Any


class APIError(Exception):
    """Base exception for all API errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {"detail": str(self)}

    def headers(self) -> dict[str, str] | None:
        return None


class InvalidInputError(APIError):
    """Raised for missing or malformed submission fields - maps to HTTP 400."""

    status_code = 400


class ForbiddenError(APIError):
    """Raised when the caller may not act on behalf of another user - maps to HTTP 403."""

    status_code = 403


class ResourceNotFoundError(APIError):
    """Raised when a required resource is not found - maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any, *, message: str | None = None):
        super().__init__(message or f"{resource_type} {resource_id!r} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "resource_type": self.resource_type, "resource_id": str(self.resource_id)}


class NotReadyError(APIError):
    """Raised when the audio artifact is not available yet - maps to HTTP 409, client should retry."""

    status_code = 409

    def __init__(self, request_id: int, status: str, retry_after_seconds: int, *, message: str | None = None):
        super().__init__(message or f"Audio for request {request_id} is not ready (status: {status})")
        self.request_id = request_id
        self.status = status
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        return {"detail": str(self), "status": self.status, "retry_after_seconds": self.retry_after_seconds}

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class QueueUnavailableError(APIError):
    """Raised when the job queue backend cannot be reached - maps to HTTP 503, client may resubmit."""

    status_code = 503


class SynthesisError(Exception):
    """The remote text-to-speech call failed or timed out."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StorageError(Exception):
    """Persisting or reading an audio artifact failed."""

    retryable = True
