"""
Main FastAPI application.

Settlement API with:
- CORS configuration
- Settlement error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from seatpay.config import get_settings
from seatpay.core.errors import (
    AuthorizationNotFound,
    BookingNotFound,
    DuplicateHold,
    EarningNotFound,
    InvalidState,
    NoActiveHold,
    SettlementError,
    ValidationError,
)
from seatpay.database.connection import close_db, init_db
from seatpay.monitoring.logging import setup_logging

from .routes import (
    booking_router,
    earnings_router,
    hold_router,
    monitoring_router,
    webhook_router,
)
from .services import shutdown_services

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


def status_for(exc: SettlementError) -> int:
    """HTTP status for a settlement error."""
    if exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, (NoActiveHold, BookingNotFound, AuthorizationNotFound, EarningNotFound)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (DuplicateHold, InvalidState)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_502_BAD_GATEWAY


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    # Initialize database
    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("application_shutdown")
    try:
        await shutdown_services()
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="Seat Booking Payment Settlement",
    description=(
        "Two-phase payment settlement for ride seat bookings: holds on card or wallet "
        "rails, capture on driver acceptance, release on decline or timeout, and "
        "driver earnings."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

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

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    # Add to structlog context
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

        # Add request ID to response headers
        response.headers["X-Request-ID"] = request_id

        # Log request completion
        duration = time.time() - start_time
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        # Clear structlog context
        structlog.contextvars.clear_contextvars()


@app.exception_handler(SettlementError)
async def settlement_exception_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """
    Map settlement errors to HTTP responses.

    Only the public message leaves the service; the detail is logged.
    """
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "settlement_error",
        error_type=type(exc).__name__,
        detail=exc.detail,
        status_code=status_code,
        path=request.url.path,
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


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
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
            "retryable": False,
        },
    )


# Include routers
app.include_router(hold_router)
app.include_router(booking_router)
app.include_router(earnings_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "seatpay",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    import uvicorn

    uvicorn.run(
        "seatpay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
