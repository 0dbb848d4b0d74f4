from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a default machine-readable
    ``error_code``; raisers usually pass a more specific code
    (``INVALID_CREDENTIALS``, ``SESSION_REVOKED``, ...). ``detail`` is
    rendered as the ``details`` object of the error envelope.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Bad credentials or token (401).

    ``reason`` records the internal root cause for logs. Only refresh
    failures expose it as the error code; login failures always share one.
    """
    status_code = 401
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason or self.error_code


class AuthorizationError(ServiceError):
    """Caller is known but not allowed (403); carries an actionable code."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email or username (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
