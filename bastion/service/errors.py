from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication-core failures.

    Every failure carries a stable ``error_code`` and an HTTP-equivalent
    ``status_code`` hint so a host transport can map it without inspecting
    the concrete class:
    - validation_error (400)
    - expired (400)
    - invalid_credentials / invalid_code / invalid_key / invalid_owner (401)
    - not_verified / inactive / locked / missing_permission (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or out-of-range arguments (400)."""
    status_code = 400
    error_code = "validation_error"


class ExpiredError(ServiceError):
    """Token or code is past its lifetime (400)."""
    status_code = 400
    error_code = "expired"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Bad login. The message is deliberately generic."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(AuthenticationError):
    """Wrong verification, reset or two-factor code."""
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidKeyError(AuthenticationError):
    """API key is unknown or revoked."""
    error_code = "invalid_key"


class InvalidOwnerError(AuthenticationError):
    """API key belongs to an identity that can no longer authenticate."""
    error_code = "invalid_owner"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotVerifiedError(ForbiddenError):
    error_code = "not_verified"


class InactiveError(ForbiddenError):
    error_code = "inactive"


class LockedError(ForbiddenError):
    """Account is inside a hard lockout window."""
    error_code = "locked"

    @property
    def remaining_minutes(self) -> int:
        return int(self.detail.get("remaining_minutes", 0))


class MissingPermissionError(ForbiddenError):
    error_code = "missing_permission"


class NotFoundError(ServiceError):
    """Unknown or not-owned resource (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email or phone number (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


def to_error_envelope(exc: ServiceError) -> dict:
    """Render a service error the way hosts return it to clients."""

    return {
        "error": {
            "code": exc.error_code,
            "message": exc.message,
            "details": dict(exc.detail),
        }
    }


__all__ = [
    "ServiceError",
    "ValidationError",
    "ExpiredError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidCodeError",
    "InvalidKeyError",
    "InvalidOwnerError",
    "ForbiddenError",
    "NotVerifiedError",
    "InactiveError",
    "LockedError",
    "MissingPermissionError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "to_error_envelope",
]
