"""
FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flagkit.api.middleware.logging import LoggingMiddleware
from flagkit.api.middleware.request_id import RequestIdMiddleware
from flagkit.api.routes import router as api_router
from flagkit.core.config import settings
from flagkit.core.features.exceptions import (
    ConflictError,
    CycleError,
    FeatureFlagError,
    NotFoundError,
    ValidationError,
)
from flagkit.core.logging import configure_logging

logger = structlog.get_logger()

ERROR_STATUS_CODES: dict[type[FeatureFlagError], int] = {
    ValidationError: 422,
    CycleError: 422,
    NotFoundError: 404,
    ConflictError: 409,
}


def status_code_for(exc: FeatureFlagError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    configure_logging()
    if settings.features.backend == "database":
        from flagkit.models.database import init_db
        await init_db()
    logger.info("Application started", backend=settings.features.backend)

    yield

    # Shutdown
    from flagkit.core.features.dependencies import close_flag_cache
    await close_flag_cache()
    if settings.features.backend == "database":
        from flagkit.models.database import close_db
        await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # Middleware (last added is outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(api_router, prefix="/api")

    # Exception handlers
    @app.exception_handler(FeatureFlagError)
    async def feature_flag_exception_handler(request: Request, exc: FeatureFlagError):
        """Map flag engine errors to HTTP status codes."""
        return JSONResponse(
            status_code=status_code_for(exc),
            content={"error": exc.error_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("Unhandled error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": str(exc) if settings.debug else "An error occurred",
            },
        )

    # Health check
    @app.get("/health")
    async def health_check():
        """Quick health check endpoint (for load balancers)."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "flagkit.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        workers=settings.workers,
    )
