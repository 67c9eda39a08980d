"""Authentication gate applied in front of protected routes.

Per request the gate moves through: token present, token valid, principal
resolved and, for state-changing verbs, CSRF validated. Any failed step
raises before the handler runs; an error inside the gate is never treated
as success.

The access token is read from the ``accessToken`` cookie first and from an
``Authorization: Bearer`` header second. When both are present the cookie
wins.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from schoolauth.logging import fingerprint, get_logger
from schoolauth.service.errors import (
    AuthErrorKind,
    AuthenticationError,
    CsrfError,
    ServerError,
    ServiceError,
    StoreUnavailableError,
    error_for_kind,
)
from schoolauth.service.runtime import Runtime
from schoolauth.service.tokens import TokenKind
from schoolauth.storage.errors import StoreUnavailable
from schoolauth.storage.users import Principal

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ServerError("runtime not initialised")
    return runtime


def extract_access_token(request: Request) -> Optional[str]:
    """Cookie first, then ``Authorization: Bearer``."""
    cookie_token = request.cookies.get(ACCESS_COOKIE)
    if cookie_token:
        return cookie_token
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthGate:
    """FastAPI dependency resolving the caller's :class:`Principal`.

    The principal is also stored on ``request.state.principal``.
    """

    def __init__(self, *, enforce_csrf: bool = True) -> None:
        self.enforce_csrf = enforce_csrf

    async def __call__(self, request: Request) -> Principal:
        try:
            return await self._admit(request)
        except ServiceError:
            raise
        except StoreUnavailable as exc:
            logger.error(
                "auth_gate_store_unavailable",
                path=request.url.path,
                store_operation=exc.operation,
                reason=exc.reason,
            )
            raise StoreUnavailableError("authentication temporarily unavailable") from exc
        except Exception as exc:
            logger.exception(
                "auth_gate_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
            )
            raise ServerError("internal server error") from exc

    async def _admit(self, request: Request) -> Principal:
        runtime = get_runtime(request)
        token = extract_access_token(request)
        if not token:
            raise AuthenticationError("authentication required")

        claims = runtime.codec.verify(TokenKind.ACCESS, token)
        if claims is None:
            logger.info(
                "auth_gate_rejected",
                path=request.url.path,
                reason="invalid_access_token",
                fingerprint=fingerprint(token),
            )
            raise error_for_kind(AuthErrorKind.INVALID_TOKEN)

        user = runtime.users.find_user_by_id(claims.subject_id)
        if user is None:
            logger.info(
                "auth_gate_rejected",
                path=request.url.path,
                reason="unknown_subject",
                subject_id=claims.subject_id,
            )
            raise error_for_kind(AuthErrorKind.INVALID_TOKEN)
        principal = user.principal

        if self.enforce_csrf and request.method.upper() not in SAFE_METHODS:
            presented = request.headers.get(CSRF_HEADER)
            if not presented:
                logger.info(
                    "auth_gate_rejected",
                    path=request.url.path,
                    reason="csrf_missing",
                    subject_id=principal.id,
                )
                raise CsrfError("missing CSRF token")
            result = await runtime.sessions.validate_csrf(presented, principal.id)
            if not result.ok:
                raise error_for_kind(result.error)
            if not result.value:
                logger.info(
                    "auth_gate_rejected",
                    path=request.url.path,
                    reason="csrf_mismatch",
                    subject_id=principal.id,
                )
                raise CsrfError("invalid CSRF token")

        request.state.principal = principal
        return principal


require_principal = AuthGate()
require_principal_no_csrf = AuthGate(enforce_csrf=False)
