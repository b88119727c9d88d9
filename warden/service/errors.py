from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
    - upstream_error (502)
    - timeout (504)

    Subclasses are raised with a more specific error_code where one exists,
    e.g. ``ConflictError(..., error_code="duplicate_email")``.
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


class ForbiddenError(ServiceError):
    """Access denied by role or policy (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Factor or account locked (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, message: str, *, locked_until=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.locked_until = locked_until
        if locked_until is not None:
            self.detail.setdefault("locked_until", locked_until.isoformat())


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 60, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServiceError):
    """A collaborator (email provider, OAuth provider) failed (502)."""
    status_code = 502
    error_code = "upstream_error"


class DeadlineExceededError(ServiceError):
    """The request deadline elapsed before the operation finished (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "RateLimitedError",
    "ServerError",
    "UpstreamError",
    "DeadlineExceededError",
]
