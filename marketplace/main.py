"""
FastAPI application entry point.

Builds the application with CORS, request correlation ids, structured error
responses and the order router. On shutdown the gateway and database
connections are closed. Notifications are delivered by the Celery worker
(``marketplace.worker``), so there is nothing to drain here.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace.api.v1.orders import router as orders_router
from marketplace.core.config import get_settings
from marketplace.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from marketplace.database.connection import check_database_health, close_database_connections
from marketplace.services.payments.gateway import close_payment_gateway

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan: log startup, release resources on shutdown.
    """
    settings = get_settings()
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
        gateway_enabled=settings.gateway_enabled,
        notifications_enabled=settings.notifications_enabled,
    )

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await close_payment_gateway()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Multi-seller marketplace order lifecycle and payment reconciliation API",
        lifespan=lifespan,
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """
        Bind a correlation id for the request and log its outcome.

        The id comes from the X-Request-ID header when present and is echoed
        back on the response.
        """
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            with log_performance(
                logger,
                "request_processing",
                method=request.method,
                path=request.url.path,
            ):
                response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
            return response
        finally:
            clear_context()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "Request validation failed",
            method=request.method,
            path=request.url.path,
            errors=exc.errors(),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Validation Error",
                "message": "Request validation failed",
                "details": jsonable_encoder(exc.errors()),
                "request_id": get_request_id(),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Generic 500 that never exposes internal details."""
        logger.error(
            "Unhandled exception",
            method=request.method,
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred",
                "request_id": get_request_id(),
            },
        )

    @app.get("/health", tags=["Health"], summary="Health check endpoint")
    async def health_check() -> JSONResponse:
        database_ok = await check_database_health(max_retries=1)
        body = {
            "status": "healthy" if database_ok else "degraded",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "database": "healthy" if database_ok else "unhealthy",
        }
        return JSONResponse(
            status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body,
        )

    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    return app


app = create_app()
