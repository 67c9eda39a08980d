from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class AuthErrorKind(str, Enum):
    """Closed set of failure kinds returned by the session manager.

    Signature failure, expiry, store miss and replay all collapse into
    ``INVALID_TOKEN``; the distinction is logged, never returned.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_TOKEN = "invalid_token"
    STORE_UNAVAILABLE = "store_unavailable"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[AuthErrorKind] = None
    details: Optional[list] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthErrorKind, details: Optional[list] = None) -> "AuthResult[T]":
        return cls(error=error, details=details)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status and a stable error code:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown credential key or wrong password; the two are not distinguished."""
    pass


class InvalidTokenError(AuthenticationError):
    """Token expired, forged, unknown, revoked or replayed."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    """Missing or mismatched CSRF token on a state-changing request."""
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Admission control rejected the request (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServiceError):
    """Session store outage or timeout (503)."""
    status_code = 503
    error_code = "service_unavailable"


_KIND_TO_ERROR = {
    AuthErrorKind.INVALID_CREDENTIALS: (InvalidCredentialsError, "invalid credentials"),
    AuthErrorKind.INVALID_TOKEN: (InvalidTokenError, "invalid or expired token"),
    AuthErrorKind.STORE_UNAVAILABLE: (
        StoreUnavailableError,
        "authentication temporarily unavailable",
    ),
    AuthErrorKind.VALIDATION_ERROR: (ValidationError, "invalid request"),
    AuthErrorKind.CONFLICT: (ConflictError, "user already exists"),
}


def error_for_kind(kind: AuthErrorKind, details: Optional[list] = None) -> ServiceError:
    """Translate a result kind into the HTTP-mapped exception with a generic message."""
    error_cls, message = _KIND_TO_ERROR.get(kind, (ServerError, "internal server error"))
    return error_cls(message, detail={"problems": details} if details else None)


__all__ = [
    "AuthErrorKind",
    "AuthResult",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "CsrfError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
    "error_for_kind",
]
