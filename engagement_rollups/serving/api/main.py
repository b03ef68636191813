"""
FastAPI Application Factory

Creates and configures the rollup API application: routes, error mapping,
middleware and the Prometheus endpoint.
"""

from typing import Any, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from engagement_rollups.config import get_settings
from engagement_rollups.errors import (
    InvalidContinuationToken,
    SessionRollupNotFound,
    StorageUnavailableError,
)
from engagement_rollups.serving.api.middleware import RequestLoggingMiddleware
from engagement_rollups.serving.api.routes import (
    health_router,
    ingest_router,
    sessions_router,
    users_router,
)

logger = structlog.get_logger(__name__)


async def session_not_found_handler(request: Request, exc: SessionRollupNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def invalid_token_handler(request: Request, exc: InvalidContinuationToken) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    logger.error("Rollup store unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Rollup store unavailable"},
        headers={"Retry-After": "5"},
    )


def create_api_app(lifespan: Optional[Callable[[FastAPI], Any]] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        lifespan: Lifespan context that puts engine and query facade on
            app.state; tests set app.state directly instead

    Returns:
        Configured FastAPI app instance
    """
    settings = get_settings()

    app = FastAPI(
        title="Engagement Rollups API",
        description="Incrementally maintained session and user engagement rollups",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Compression
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(SessionRollupNotFound, session_not_found_handler)
    app.add_exception_handler(InvalidContinuationToken, invalid_token_handler)
    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)

    # API routes
    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(ingest_router, prefix="/api/v1", tags=["Ingest"])
    app.include_router(sessions_router, prefix="/api/v1/sessions", tags=["Sessions"])
    app.include_router(users_router, prefix="/api/v1/users", tags=["Users"])

    if settings.monitoring.enable_metrics:
        @app.get("/metrics", include_in_schema=False)
        async def metrics() -> Response:
            """Prometheus scrape endpoint."""
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": "Engagement Rollups API",
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app
