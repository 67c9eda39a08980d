from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schoolauth.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session subsystem.

    Built once at startup and passed down; the services never read the
    process environment themselves. All lifetimes are in seconds.
    """

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_operation_timeout: float = env_field(
        2.0,
        "STORE_OPERATION_TIMEOUT",
        description="Upper bound in seconds for a single session store round-trip",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_expires_in: int = env_field(
        900, "JWT_EXPIRES_IN", description="Access token lifetime in seconds"
    )
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_refresh_expires_in: int = env_field(
        604800, "JWT_REFRESH_EXPIRES_IN", description="Refresh token lifetime in seconds"
    )
    refresh_token_redis_ttl: int = env_field(
        604800,
        "REFRESH_TOKEN_REDIS_TTL",
        description="Store-level TTL of a refresh token binding in seconds",
    )
    csrf_token_ttl: int = env_field(
        86400, "CSRF_TOKEN_TTL", description="CSRF token lifetime in seconds"
    )

    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    cors_allow_origins: list[str] = env_field(
        [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ],
        "CORS_ALLOW_ORIGINS",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "jwt_expires_in",
        "jwt_refresh_expires_in",
        "refresh_token_redis_ttl",
        "csrf_token_ttl",
    )
    @classmethod
    def _require_positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetimes must be a positive number of seconds")
        return value

    @field_validator("store_operation_timeout")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store operation timeout must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        for name in ("jwt_secret", "jwt_refresh_secret"):
            if getattr(self, name):
                continue
            if self.app_env == AppEnv.PRODUCTION:
                raise ValueError(f"{name.upper()} must be set in production")
            # Ephemeral secret: every restart invalidates outstanding tokens
            setattr(self, name, secrets.token_urlsafe(64))
            logger.warning(
                "signing_secret_generated",
                setting=name.upper(),
                message="No secret configured; tokens will not survive a restart",
            )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def cookie_secure(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
