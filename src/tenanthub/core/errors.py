"""Error handling module for tenanthub.

This module defines error codes, exception classes, and response models.
Callers of the orchestrator receive these typed errors and may surface
them directly.

Error Response Format:
{
    "error": {
        "code": "SUBDOMAIN_TAKEN",
        "message": "Subdomain acme is already taken"
    }
}

Usage:
    from tenanthub.core.errors import ConflictError, ErrorCode

    raise ConflictError(ErrorCode.SUBDOMAIN_TAKEN, "Subdomain acme is already taken")
"""

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_SUBDOMAIN = "INVALID_SUBDOMAIN"
    INVALID_DISPLAY_NAME = "INVALID_DISPLAY_NAME"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    SUBDOMAIN_TAKEN = "SUBDOMAIN_TAKEN"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    RESOURCE_OWNED_ELSEWHERE = "RESOURCE_OWNED_ELSEWHERE"
    INVALID_STATE = "INVALID_STATE"
    TIER_LIMIT_EXCEEDED = "TIER_LIMIT_EXCEEDED"
    WORKER_IDS_EXHAUSTED = "WORKER_IDS_EXHAUSTED"
    INFRASTRUCTURE_FAILED = "INFRASTRUCTURE_FAILED"
    CRYPTOGRAPHIC_FAILURE = "CRYPTOGRAPHIC_FAILURE"
    CLOCK_DRIFT = "CLOCK_DRIFT"


class ErrorDetail(BaseModel):
    """Error detail containing code and message."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Error response format."""

    error: ErrorDetail


class TenantHubError(Exception):
    """Base exception for tenanthub.

    Attributes:
        code: The error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code an outer API should return
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to ErrorResponse model."""
        return ErrorResponse(
            error=ErrorDetail(code=self.code.value, message=self.message)
        )


class ValidationError(TenantHubError):
    """400 Bad Request - Input rejected before any step ran."""

    def __init__(
        self,
        message: str = "Validation failed",
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ) -> None:
        super().__init__(code, message, 400)


class NotFoundError(TenantHubError):
    """404 Not Found - Instance not found."""

    def __init__(self, message: str = "Instance not found") -> None:
        super().__init__(ErrorCode.INSTANCE_NOT_FOUND, message, 404)


class ConflictError(TenantHubError):
    """409 Conflict - Domain taken, concurrent modification or invalid state."""

    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        super().__init__(code, message or code.value, 409)


class QuotaExceededError(TenantHubError):
    """403 Forbidden - Tier instance limit reached."""

    def __init__(self, message: str = "Tier instance limit exceeded") -> None:
        super().__init__(ErrorCode.TIER_LIMIT_EXCEEDED, message, 403)


class ResourceExhaustedError(TenantHubError):
    """503 Service Unavailable - Worker id space exhausted."""

    def __init__(self, message: str = "No worker ids available") -> None:
        super().__init__(ErrorCode.WORKER_IDS_EXHAUSTED, message, 503)


class InfrastructureError(TenantHubError):
    """502 Bad Gateway - An external client call failed inside a step.

    Attributes:
        step: Name of the step whose client call failed
    """

    def __init__(self, step: str, message: str = "Infrastructure call failed") -> None:
        self.step = step
        super().__init__(ErrorCode.INFRASTRUCTURE_FAILED, message, 502)


class CryptographicError(TenantHubError):
    """500 Internal Server Error - Key wrap/unwrap or field decryption failed."""

    def __init__(self, message: str = "Cryptographic operation failed") -> None:
        super().__init__(ErrorCode.CRYPTOGRAPHIC_FAILURE, message, 500)


class ClockDriftError(TenantHubError):
    """500 Internal Server Error - System clock moved backwards beyond tolerance."""

    def __init__(self, message: str = "Clock moved backwards") -> None:
        super().__init__(ErrorCode.CLOCK_DRIFT, message, 500)


class RangeError(ValueError):
    """Raised when a Snowflake worker id is outside the 10-bit space."""
