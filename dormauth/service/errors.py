from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that the API envelope carries:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - locked (423)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500/503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # When True the HTTP layer also deletes the session cookie
    clear_session: bool = False

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
    """Malformed input or password policy violation (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Bad credentials, MFA code or backup code (401).

    Messages are deliberately uniform so callers cannot tell an unknown
    identity apart from a wrong secret.
    """
    status_code = 401
    error_code = "unauthorized"


class ExpiredTokenError(AuthenticationError):
    """A session, challenge or reset token is past its validity (401)."""
    pass


class InvalidSessionError(AuthenticationError):
    """Presented session token does not resolve to a live session (401)."""
    clear_session = True


class SessionExpiredError(ExpiredTokenError):
    """Session passed its idle or absolute timeout (401)."""
    clear_session = True


class LockoutError(ServiceError):
    """Account temporarily locked after repeated failures (423).

    ``detail`` carries ``retry_after_seconds`` and ``locked_until`` so the
    caller can tell the user when to try again.
    """
    status_code = 423
    error_code = "locked"

    @property
    def retry_after_seconds(self) -> Optional[int]:
        value = self.detail.get("retry_after_seconds")
        return int(value) if value is not None else None


class IPBlockedError(LockoutError):
    """Client IP is blocked by the login guard (429)."""
    status_code = 429
    error_code = "rate_limited"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class DependencyError(ServiceError):
    """An outbound collaborator (email, audit) failed (503).

    Notification and audit paths log these and carry on; they never fail
    the mutation that triggered them.
    """
    status_code = 503
    error_code = "server_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ExpiredTokenError",
    "InvalidSessionError",
    "SessionExpiredError",
    "LockoutError",
    "IPBlockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DependencyError",
    "ServerError",
]
