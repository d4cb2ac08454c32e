from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error (400)
    - invalid_credentials (401)
    - invalid_session (401)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
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


class Unauthenticated(ServiceError):
    """Authentication missing or not acceptable (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(Unauthenticated):
    """Unknown email or wrong password; the two are indistinguishable (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredSession(Unauthenticated):
    """Refresh secret missing, unknown, revoked or expired (401).

    The HTTP layer clears the refresh cookie whenever this is raised.
    """
    error_code = "invalid_session"
    clear_refresh_cookie = True

    def __init__(self, message: str = "invalid or expired session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLocked(ServiceError):
    """Account is temporarily locked after repeated failures (423).

    Only the remaining duration, rounded up to whole minutes, is exposed.
    """
    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_seconds: float) -> None:
        self.retry_after_minutes = max(1, math.ceil(remaining_seconds / 60))
        super().__init__(
            f"account locked, try again in ~{self.retry_after_minutes} min",
            detail={"retry_after_minutes": self.retry_after_minutes},
        )


class RateLimited(ServiceError):
    """A rate limit window was exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, window: str, retry_after: int) -> None:
        self.window = window
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            "too many requests",
            detail={"window": window, "retry_after": self.retry_after},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AccessTokenError(Unauthenticated):
    """Base for bearer token verification failures."""


class TokenExpiredError(AccessTokenError):
    def __init__(self, message: str = "access token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedTokenError(AccessTokenError):
    def __init__(self, message: str = "malformed access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidClaimsError(MalformedTokenError):
    """Issuer or audience does not match this deployment."""

    def __init__(self, message: str = "access token claims rejected", **kwargs) -> None:
        super().__init__(message, **kwargs)


class BadSignatureError(AccessTokenError):
    def __init__(self, message: str = "access token signature invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "Unauthenticated",
    "InvalidCredentials",
    "InvalidOrExpiredSession",
    "ForbiddenError",
    "ConflictError",
    "AccountLocked",
    "RateLimited",
    "ServerError",
    "AccessTokenError",
    "TokenExpiredError",
    "MalformedTokenError",
    "InvalidClaimsError",
    "BadSignatureError",
]
