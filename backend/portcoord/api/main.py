"""
Port Coordinator - FastAPI Application
======================================

Main application factory with all routers and error handlers.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from portcoord.api import escalations, feedback, locks, pipelines
from portcoord.core.config import settings
from portcoord.core.database import AsyncSessionLocal, close_db, init_db
from portcoord.core.exceptions import (
    ConflictError,
    CoordinationError,
    NotFoundError,
    ValidationError,
)
from portcoord.core.logging import configure_logging
from portcoord.core.schemas import ErrorResponse, HealthResponse

configure_logging()

logger = structlog.get_logger()


def error_status(exc: CoordinationError) -> int:
    """HTTP status for a coordination error."""
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return 422
    return status.HTTP_400_BAD_REQUEST


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables if missing

    Shutdown:
    - Close database connections
    """
    logger.info("Starting Port Coordinator", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutting down Port Coordinator")
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Coordination core for concurrent coding-agent workers",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(CoordinationError)
    async def coordination_exception_handler(request: Request, exc: CoordinationError) -> JSONResponse:
        """Map coordination errors to 404 / 409 / 422 with structured detail."""
        status_code = error_status(exc)
        logger.info(
            "Coordination error",
            code=exc.code,
            status_code=status_code,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(**exc.to_dict()).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Check application and database health."""
        database = "connected"
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning("Database health check failed", error=str(exc))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(pipelines.router, prefix=settings.API_V1_PREFIX)
    app.include_router(pipelines.dependencies_router, prefix=settings.API_V1_PREFIX)
    app.include_router(locks.router, prefix=settings.API_V1_PREFIX)
    app.include_router(escalations.router, prefix=settings.API_V1_PREFIX)
    app.include_router(feedback.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "portcoord.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
