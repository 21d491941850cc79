"""
Error taxonomy for the upload protocol.

Every failure the service reports belongs to exactly one ErrorKind. The kind
decides the HTTP status and whether the caller should retry, so route code
and clients branch on the kind rather than on message text.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Tag carried by every UploadError."""
    CONFIGURATION = "configuration_error"
    VALIDATION = "validation_error"
    MALFORMED_PAYLOAD = "malformed_payload"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    PERSISTENCE = "persistence_error"


class UploadError(Exception):
    """
    Base class for all errors surfaced by the upload protocol.

    Subclasses set kind, status_code and retryable. The message is shown to
    callers, so it must never contain credentials or signed URLs.
    """
    kind: ErrorKind = ErrorKind.PERSISTENCE
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error body."""
        body: dict[str, Any] = {
            "error": self.kind.value,
            "detail": self.message,
            "retryable": self.retryable,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


class ConfigurationError(UploadError):
    """Required configuration or credentials are missing. Fatal."""
    kind = ErrorKind.CONFIGURATION
    status_code = 500
    retryable = False


class ValidationError(UploadError):
    """Caller-supplied data violates a precondition. Fix the request."""
    kind = ErrorKind.VALIDATION
    status_code = 400
    retryable = False


class MalformedPayload(ValidationError):
    """Telemetry payload is not an array at all."""
    kind = ErrorKind.MALFORMED_PAYLOAD


class StorageUnavailable(UploadError):
    """Object storage could not be reached or refused the operation."""
    kind = ErrorKind.STORAGE_UNAVAILABLE
    status_code = 500
    retryable = True


class PersistenceError(UploadError):
    """The database transaction failed and was rolled back."""
    kind = ErrorKind.PERSISTENCE
    status_code = 500
    retryable = True
