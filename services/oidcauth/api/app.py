"""
FastAPI application factory for the oidcauth relying party.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from oidcauth.auth.loginflow import validate_registry
from oidcauth.config import settings
from oidcauth.db.session import close_db, init_db
from oidcauth.exceptions import OIDCAuthError
from oidcauth.logging_config import configure_logging, get_logger
from oidcauth.redis.client import close_redis, init_redis
from oidcauth.services.login_service import Collaborators

from .health import router as health_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting oidcauth", version="0.1.0", login_flow=settings.oidc.login_flow)

    validate_registry(settings.oidc.login_flow)

    await init_db()
    logger.info("Database initialized")

    await init_redis()
    logger.info("Redis initialized")

    yield

    # Shutdown
    logger.info("Shutting down oidcauth")
    await close_redis()
    await close_db()


def create_application(collaborators: Collaborators | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``collaborators`` wires in the host's user directory, role assignment
    and capability services. A host may also set
    ``app.state.collaborators`` after creation.
    """
    app = FastAPI(
        title="oidcauth",
        description="OpenID Connect relying party",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/auth/oidc/docs",
        redoc_url=None,
        openapi_url="/auth/oidc/openapi.json",
    )
    app.state.collaborators = collaborators

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    # Relying-party errors not translated by a route
    @app.exception_handler(OIDCAuthError)
    async def oidc_exception_handler(request: Request, exc: OIDCAuthError) -> JSONResponse:
        logger.warning(
            "Unhandled OIDC error",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    from oidcauth.api.routers.oidc import router as oidc_router

    app.include_router(oidc_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
