from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schoolauth.logging import get_correlation_id

_ZERO_WIDTH = dict.fromkeys(map(ord, "\u200b\u200c\u200d\u2060\ufeff"))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width characters."""
    return unicodedata.normalize("NFKC", value.translate(_ZERO_WIDTH))


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credential_key: str = Field(..., alias="credentialKey", max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("credential_key")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credential_key: str = Field(..., alias="credentialKey", max_length=254)
    # Strength rules are enforced by the session manager so problems come back together
    password: str = Field(..., max_length=1024)
    role_id: Optional[int] = Field(default=None, alias="roleId", ge=1)

    @field_validator("credential_key")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class PrincipalOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    credential_key: str = Field(..., serialization_alias="credentialKey")
    role_id: Optional[int] = Field(default=None, serialization_alias="roleId")
    tenant_scope_id: Optional[int] = Field(default=None, serialization_alias="tenantScopeId")


class AuthResponse(BaseModel):
    """Body of a successful login, registration or refresh.

    Tokens travel in cookies; only the CSRF token is echoed in the body so
    client script can send it back in ``X-CSRF-Token``.
    """

    csrf_token: str = Field(..., serialization_alias="csrfToken")
    expires_in: int = Field(..., serialization_alias="expiresIn")
    user: PrincipalOut


class CsrfTokenResponse(BaseModel):
    csrf_token: str = Field(..., serialization_alias="csrfToken")


class LogoutResponse(BaseModel):
    revoked: int = 0
