"""
JvmScope FastAPI application entry point.

Creates and configures the FastAPI app with:
- CORS middleware
- Security headers middleware
- API v1 router and the discovery WebSocket
- Discovery exception handlers
- Health check endpoint
- Startup / shutdown hooks that run the discovery runtime
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from jvmscope import __version__
from jvmscope.api.errors import register_exception_handlers
from jvmscope.api.v1.router import router as v1_router
from jvmscope.api.v1.websocket import router as ws_router
from jvmscope.config import get_settings
from jvmscope.core.database import get_engine, get_session_factory
from jvmscope.core.events import RedisNotifier
from jvmscope.core.logging import configure_logging, get_logger
from jvmscope.runtime import DiscoveryRuntime

# ── Constants ────────────────────────────────────────────────────────────────

_HEALTH_CHECK_PATH: str = "/health"

_SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


# ── Security Headers Middleware ──────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware that injects security-related HTTP response headers."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response: Response = await call_next(request)
        for header_name, header_value in _SECURITY_HEADERS.items():
            response.headers[header_name] = header_value
        return response


# ── Application Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    """Build and return the configured FastAPI application instance.

    Returns:
        A fully configured ``FastAPI`` app ready to serve requests.
    """
    settings = get_settings()

    application = FastAPI(
        title=settings.APP_NAME,
        description=(
            "JVM discovery -- finds JVMs across container runtimes, "
            "Kubernetes, JDP multicast and external plugins, and keeps a "
            "reconciled topology tree of them."
        ),
        version=__version__,
        openapi_url="/openapi.json",
    )

    # ── Middleware (order matters: outermost first) ───────────────────────

    application.add_middleware(SecurityHeadersMiddleware)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=600,
    )

    # ── Routers ──────────────────────────────────────────────────────────

    application.include_router(v1_router, prefix=settings.API_V1_PREFIX)
    application.include_router(ws_router, tags=["websocket"])
    register_exception_handlers(application)

    # ── Health Check ─────────────────────────────────────────────────────

    @application.get(
        _HEALTH_CHECK_PATH,
        tags=["health"],
        summary="Application health check",
        response_class=JSONResponse,
    )
    async def health_check(request: Request) -> dict[str, Any]:
        """Report which discovery backends are running.

        ``idle`` lists enabled backends whose environment was unavailable
        at startup.  Before the runtime is up the status is ``starting``.
        """
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            running: list[str] = []
            idle: list[str] = []
        else:
            running = [backend.realm for backend in runtime.active]
            idle = [b.realm for b in runtime.backends if b not in runtime.active]
        return {
            "status": "healthy" if runtime is not None else "starting",
            "app": settings.APP_NAME,
            "version": __version__,
            "backends": running,
            "idle": idle,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ── Lifecycle Events ─────────────────────────────────────────────────

    @application.on_event("startup")
    async def on_startup() -> None:
        """Verify the database, then start the discovery runtime."""
        configure_logging()
        logger = get_logger(__name__)
        logger.info(
            "Application starting",
            extra={"action": "startup", "target": settings.APP_NAME},
        )

        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection verified",
            extra={"action": "db_check", "target": settings.DATABASE_URL.split("@")[-1]},
        )

        runtime = DiscoveryRuntime(
            get_session_factory(),
            settings=settings,
            notifier=RedisNotifier(),
        )
        application.state.runtime = runtime
        await runtime.start()

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        """Stop every backend and dispose of the database engine."""
        logger = get_logger(__name__)
        logger.info(
            "Application shutting down",
            extra={"action": "shutdown", "target": settings.APP_NAME},
        )
        runtime = getattr(application.state, "runtime", None)
        if runtime is not None:
            await runtime.stop()
            application.state.runtime = None
        await get_engine().dispose()

    return application


# ── Module-Level App Instance ────────────────────────────────────────────────

app: FastAPI = create_app()
