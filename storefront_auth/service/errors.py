from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[list[dict[str, Any]]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details


class ValidationError(ServiceError):
    """Request failed validation (400). ``details`` lists offending fields."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials missing or rejected (401).

    Messages must not reveal which half of the credential was wrong.
    """
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Authenticated identity lacks the required role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class _RetryableError(ServiceError):
    def __init__(self, message: str, *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(int(retry_after), 1)


class LockedAccountError(_RetryableError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(_RetryableError):
    """Too many attempts inside the throttling window (429)."""
    status_code = 429
    error_code = "rate_limited"


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "LockedAccountError",
    "RateLimitedError",
    "InternalError",
]
