from typing import Any, Dict, Optional


class ConfigurationError(RuntimeError):
    """Raised when the effective configuration cannot be used to start the service."""


class IntakeError(Exception):
    """Base class for failures that map onto an HTTP error response."""

    status_code = 500
    reason = "internal_error"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason}

    def headers(self) -> Dict[str, str]:
        return {}


class Unauthorized(IntakeError):
    status_code = 401
    reason = "unauthorized"
    message = "API authentication required."


class TransportBlocked(Unauthorized):
    reason = "https_required"
    message = "HTTPS is required."


class Throttled(IntakeError):
    status_code = 429
    reason = "rate_limited"
    message = "Rate limit exceeded"

    def __init__(self, retry_after: float, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, float(retry_after))

    @property
    def retry_after_seconds(self) -> int:
        # Round up so clients never retry inside the closed window.
        whole = int(self.retry_after)
        return whole + 1 if self.retry_after > whole else max(whole, 1)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retryAfter"] = self.retry_after_seconds
        return payload

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class ValidationError(IntakeError):
    status_code = 400
    reason = "invalid_request"
    message = "Invalid request"


class UnsupportedType(ValidationError):
    reason = "unsupported_type"
    message = "Unsupported content type"


class TooLarge(ValidationError):
    reason = "too_large"
    message = "File too large"


class EmptyUpload(ValidationError):
    reason = "empty_file"
    message = "Uploaded file is empty"


class MissingUpload(ValidationError):
    reason = "no_file"
    message = "No image provided"


class UploadInterrupted(ValidationError):
    reason = "upload_interrupted"
    message = "Upload was interrupted before completion"


class MissingName(ValidationError):
    reason = "missing_name"
    message = "Image name is required"


class AmbiguousCredentials(ValidationError):
    reason = "ambiguous_api_key"
    message = "Multiple API keys provided"


class NotFound(IntakeError):
    status_code = 404
    reason = "not_found"
    message = "Image not found"


class StorageError(IntakeError):
    """I/O failure while touching the storage directory.

    The message returned to callers is always the generic one; details are
    logged server-side where the error is raised.
    """

    status_code = 500
    reason = "storage_error"
    message = "Storage operation failed"

    def __init__(self) -> None:
        super().__init__()
