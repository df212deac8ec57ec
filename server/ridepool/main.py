"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .core import database
from .core.config import settings
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    request_validation_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    SERVICE_VERSION,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import booking_router, health_router, metrics_router, pickup_router, ride_router

# Configure structured logging
setup_structured_logging()

# Configure traditional logging for compatibility
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Sets up tracing and metrics, creates tables, and disposes the engine on shutdown.
    """
    logger.info(
        "Starting ride booking service",
        extra={
            "environment": settings.environment,
            "debug": settings.debug,
            "identity_mode": settings.identity_mode
        }
    )

    try:
        setup_tracing()
        setup_metrics()
        instrument_sqlalchemy()
        logger.info("Observability setup completed")

        await database.init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize application", extra={"error": str(e)}, exc_info=True)
        raise

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down ride booking service")
    await database.close_db()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Ridepool Booking API",
        description=(
            "RPC-over-HTTP API for ride publishing, seat booking requests, "
            "driver acceptance with atomic seat inventory, and PIN-verified pickups"
        ),
        version=SERVICE_VERSION,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "traceparent", "tracestate", "Retry-After"],
    )

    setup_middleware(app, enable_logging=True)
    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Health Check",
        description="Check if the service is healthy and responsive",
        response_model=dict,
    )
    async def health_check():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "environment": settings.environment,
            "debug": settings.debug,
        }

    @app.get(
        "/ready",
        tags=["Health"],
        summary="Readiness Check",
        description="Check that the database accepts queries",
        response_model=dict,
    )
    async def readiness_check():
        """
        Readiness check endpoint that verifies the database connection.

        Returns 503 when the database cannot be reached.
        """
        try:
            async with database.engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
            database_status = "ok"
        except Exception as e:
            logger.warning("Readiness check failed", extra={"error": str(e)})
            database_status = "unavailable"

        ready = database_status == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "service": SERVICE_NAME,
                "checks": {"database": database_status},
            }
        )

    @app.get(
        "/info",
        status_code=status.HTTP_200_OK,
        tags=["Info"],
        summary="Service Information",
        description="Get detailed information about the service",
        response_model=dict,
    )
    async def service_info():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "description": "Ride-sharing booking lifecycle and seat inventory service",
            "environment": settings.environment,
            "debug": settings.debug,
            "features": {
                "identity_mode": settings.identity_mode,
                "payment_authorization": settings.payment_authorization_enabled,
                "pickup_pin_ttl_hours": settings.pickup_pin_ttl_hours,
                "pickup_pin_max_attempts": settings.pickup_pin_max_attempts,
                "tracing": settings.otlp_endpoint is not None,
                "problem_details": True,
            },
            "endpoints": {
                "health": "/health",
                "readiness": "/ready",
                "metrics": "/metrics",
                "docs": "/docs" if settings.debug else None,
            },
        }

    app.include_router(health_router)
    app.include_router(ride_router)
    app.include_router(booking_router)
    app.include_router(pickup_router)
    app.include_router(metrics_router)

    logger.info("FastAPI application created and configured")

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ridepool.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
