from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code carried in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict / already_used (409)
    - expired (410)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


UnauthorizedError = AuthenticationError


class InvalidCodeError(AuthenticationError):
    """A one-time code (TOTP or backup) did not verify (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class NoPendingEnrollmentError(NotFoundError):
    """No two-factor enrollment is awaiting confirmation (404)."""
    pass


class ConflictError(ServiceError):
    """Resource conflict with current state (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyEnabledError(ConflictError):
    """Two-factor authentication is already active (409)."""
    pass


class NotEnabledError(ConflictError):
    """Two-factor authentication is not active (409)."""
    pass


class AlreadyUsedError(ConflictError):
    """Single-use token was already consumed (409)."""
    error_code = "already_used"


class ExpiredError(ServiceError):
    """Token is past its expiry (410)."""
    status_code = 410
    error_code = "expired"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "UnauthorizedError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "NoPendingEnrollmentError",
    "ConflictError",
    "AlreadyEnabledError",
    "NotEnabledError",
    "AlreadyUsedError",
    "ExpiredError",
]
