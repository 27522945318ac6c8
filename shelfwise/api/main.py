"""
Main FastAPI application.

Library lending API with:
- CORS configuration
- Error handling mapped from LendingError
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shelfwise import __version__
from shelfwise.config import get_settings
from shelfwise.core.errors import LendingError
from shelfwise.database.connection import init_db
from shelfwise.monitoring.logging import setup_logging
from shelfwise.services import LendingServices, build_services

from .routes import (
    account_router,
    admin_router,
    borrow_router,
    monitoring_router,
    notification_router,
    return_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(services: Optional[LendingServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built components (tests inject their own); built from
            Settings when omitted, in which case the app owns and closes them

    Returns:
        FastAPI: Configured application
    """
    owns_services = services is None
    services = services or build_services()
    settings = services.settings
    setup_logging(settings, services.flags)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            flags=services.flags.model_dump(),
        )

        try:
            await init_db(services.engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        if owns_services:
            try:
                await services.close()
                logger.info("services_closed")
            except Exception as e:
                logger.error("services_shutdown_error", error=str(e))

    app = FastAPI(
        title="Shelfwise Lending API",
        description=(
            "Library lending engine: borrow and return workflows with admin approval, "
            "inventory accounting, overdue fines, borrowing restrictions and payments."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        An incoming X-Request-ID is reused so a caller can correlate logs.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
        """Map domain errors to their HTTP status and error body."""
        logger.info(
            "lending_error",
            error_code=exc.error_code,
            message=exc.user_message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                }
            },
        )

    # Include routers
    app.include_router(borrow_router)
    app.include_router(return_router)
    app.include_router(account_router)
    app.include_router(notification_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "shelfwise.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
