from __future__ import annotations

from typing import Optional, Protocol
from urllib.parse import urlparse, urlunparse

from schoolauth.config import Settings, get_settings
from schoolauth.logging import get_logger
from schoolauth.service.passwords import CredentialVerifier
from schoolauth.service.sessions import SessionManager
from schoolauth.service.tokens import TokenCodec
from schoolauth.storage.memory_store import MemorySessionStore
from schoolauth.storage.redis_store import RedisSessionStore
from schoolauth.storage.session_store import SessionStore
from schoolauth.storage.users import MemoryUserDirectory, UserDirectory

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class AdmissionControl(Protocol):
    """External rate limiter consulted before credential-handling routes."""

    async def admit(self, key: str) -> bool: ...


class AllowAllAdmission:
    async def admit(self, key: str) -> bool:
        return True


def build_session_store(settings: Settings) -> SessionStore:
    """Pick the Redis store, or the memory store when allowed.

    Redis is required unless ``USE_MEMORY_STORE`` is set, or Redis is
    unreachable and ``TEST_MODE`` / ``ALLOW_REDIS_FALLBACK_DEV`` permits an
    in-process fallback.
    """
    if settings.use_memory_store:
        logger.info("session_store_initialized", store_type="memory")
        return MemorySessionStore()

    redis_error: Exception | None = None
    try:
        store = RedisSessionStore(
            settings.redis_url, operation_timeout=settings.store_operation_timeout
        )
        store.verify_connection()
        logger.info(
            "session_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(settings.redis_url),
        )
        return store
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for session storage; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message=(
            f"Running without Redis under {fallback_mode}; sessions are per-process "
            "and lost on restart."
        ),
        mode=fallback_mode,
    )
    return MemorySessionStore()


class Runtime:
    """Holds the service instances for one application."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        users: UserDirectory,
        *,
        admission: Optional[AdmissionControl] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.users = users
        self.admission: AdmissionControl = admission or AllowAllAdmission()
        self.verifier = verifier or CredentialVerifier()
        self.codec = TokenCodec(settings)
        self.sessions = SessionManager(
            store, users, self.codec, self.verifier, settings
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Runtime":
        settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=settings.app_env.value,
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        return cls(settings, build_session_store(settings), MemoryUserDirectory())

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed")
