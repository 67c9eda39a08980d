from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import JSONResponse

from schoolauth.api.error_handling import error_response
from schoolauth.api.gate import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    get_runtime,
    require_principal,
    require_principal_no_csrf,
)
from schoolauth.api.schemas import (
    AuthResponse,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    PrincipalOut,
    RefreshRequest,
    RegisterRequest,
)
from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.errors import (
    AuthErrorKind,
    ForbiddenError,
    RateLimitedError,
    error_for_kind,
)
from schoolauth.service.runtime import Runtime
from schoolauth.service.sessions import SessionTokens
from schoolauth.service.tokens import TokenKind
from schoolauth.storage.users import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _apply_session_cookies(response: Response, runtime: Runtime, tokens: SessionTokens) -> None:
    settings = runtime.settings
    for name, value, kind in (
        (ACCESS_COOKIE, tokens.access_token, TokenKind.ACCESS),
        (REFRESH_COOKIE, tokens.refresh_token, TokenKind.REFRESH),
    ):
        response.set_cookie(
            name,
            value,
            max_age=runtime.codec.cookie_max_age(kind),
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            path="/",
        )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=settings.cookie_secure, httponly=True, samesite="strict"
        )


def _principal_out(principal: Principal) -> PrincipalOut:
    return PrincipalOut(
        id=principal.id,
        credential_key=principal.credential_key,
        role_id=principal.role_id,
        tenant_scope_id=principal.tenant_scope_id,
    )


def _session_payload(tokens: SessionTokens) -> dict:
    return AuthResponse(
        csrf_token=tokens.csrf_token,
        expires_in=tokens.access_expires_in,
        user=_principal_out(tokens.principal),
    ).model_dump(by_alias=True)


async def _check_admission(runtime: Runtime, operation: str, request: Request) -> None:
    client = request.client.host if request.client else "unknown"
    if not await runtime.admission.admit(f"{operation}:{client}"):
        logger.warning("admission_rejected", operation=operation, client=client)
        raise RateLimitedError("too many requests")


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    if not runtime.settings.allow_registration:
        raise ForbiddenError("registration is disabled")
    await _check_admission(runtime, "register", request)
    result = await runtime.sessions.register(
        body.credential_key, body.password, role_id=body.role_id
    )
    if not result.ok:
        raise error_for_kind(result.error, result.details)
    _apply_session_cookies(response, runtime, result.value)
    return Envelope(status="ok", data=_session_payload(result.value))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    await _check_admission(runtime, "login", request)
    result = await runtime.sessions.login(body.credential_key, body.password)
    if not result.ok:
        raise error_for_kind(result.error, result.details)
    _apply_session_cookies(response, runtime, result.value)
    return Envelope(status="ok", data=_session_payload(result.value))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(default=None),
):
    runtime = get_runtime(request)
    presented = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    result = await runtime.sessions.refresh(presented)
    if not result.ok:
        exc = error_for_kind(result.error)
        failure = error_response(exc.status_code, exc.message, code=exc.error_code)
        # An outage leaves the presented token's fate unknown; keep the cookies for a retry
        if result.error == AuthErrorKind.INVALID_TOKEN:
            _clear_session_cookies(failure, runtime.settings)
        return failure
    _apply_session_cookies(response, runtime, result.value)
    return Envelope(status="ok", data=_session_payload(result.value))


@router.get("/csrf-token", response_model=Envelope)
async def csrf_token(
    request: Request, principal: Principal = Depends(require_principal_no_csrf)
):
    runtime = get_runtime(request)
    result = await runtime.sessions.issue_csrf(principal.id)
    if not result.ok:
        raise error_for_kind(result.error)
    return Envelope(
        status="ok", data=CsrfTokenResponse(csrf_token=result.value).model_dump(by_alias=True)
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    principal: Principal = Depends(require_principal),
):
    runtime = get_runtime(request)
    result = await runtime.sessions.logout(
        request.cookies.get(REFRESH_COOKIE), subject_id=principal.id
    )
    if not result.ok:
        exc = error_for_kind(result.error)
        failure: JSONResponse = error_response(exc.status_code, exc.message, code=exc.error_code)
        _clear_session_cookies(failure, runtime.settings)
        return failure
    _clear_session_cookies(response, runtime.settings)
    return Envelope(
        status="ok", data=LogoutResponse(revoked=int(result.value)).model_dump()
    )


@router.post("/logout-all", response_model=Envelope)
async def logout_all(
    request: Request,
    response: Response,
    principal: Principal = Depends(require_principal),
):
    runtime = get_runtime(request)
    result = await runtime.sessions.logout_everywhere(principal.id)
    if not result.ok:
        raise error_for_kind(result.error)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=LogoutResponse(revoked=result.value).model_dump())


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(require_principal)):
    return Envelope(status="ok", data=_principal_out(principal).model_dump(by_alias=True))
