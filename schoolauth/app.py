from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schoolauth.api.error_handling import register_exception_handlers
from schoolauth.api.routes import router
from schoolauth.config import Settings, get_settings
from schoolauth.logging import get_logger, set_correlation_id
from schoolauth.service.runtime import Runtime
from schoolauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was injected; close it on shutdown."""
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = Runtime.from_settings(app.state.settings)
    logger.info("app_started", owns_runtime=owns_runtime)

    yield

    runtime: Runtime = app.state.runtime
    try:
        await runtime.close()
    except StoreUnavailable as exc:
        logger.error("shutdown_failed", store_operation=exc.operation, reason=exc.reason)
    if owns_runtime:
        app.state.runtime = None


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="schoolauth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        # Cookies carry the session, so credentials are required and origins must be explicit
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-CSRF-Token",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID`` (client supplied or fresh) for logs."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Auth responses carry credentials and must not be cached by proxies
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and settings.cookie_secure:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router, prefix="/v1")

    @app.get("/healthz")
    async def health(request: Request):
        """Report session store reachability; 503 when the store cannot answer."""
        current: Optional[Runtime] = request.app.state.runtime
        store_ok = False
        if current is not None:
            try:
                store_ok = await asyncio.wait_for(
                    current.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component="session_store",
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except StoreUnavailable as exc:
                logger.error(
                    "health_check_session_store_failed",
                    store_operation=exc.operation,
                    reason=exc.reason,
                )
        status = "healthy" if store_ok else "unhealthy"
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content={
                "status": status,
                "checks": {"session_store": {"status": status}},
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


app = create_app()
