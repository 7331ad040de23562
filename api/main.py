"""
Operational API for the tool server's resilience subsystem.

Exposes health, alerts, recovery statistics, recent errors and Prometheus
metrics to operators. The application is built around a ResilienceRuntime
whose monitoring loop is started and stopped by the app lifespan.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from observability.logging import CORRELATION_ID, api_logger, track_http_requests
from service.runtime import ResilienceRuntime
from .routes import alerts, health, recovery
from .schemas import ErrorResponse

VERSION = os.getenv("VERSION", "1.0.0")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

logger = api_logger


def create_app(runtime: ResilienceRuntime = None) -> FastAPI:
    """Build the API around a runtime, creating one from the environment when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = ResilienceRuntime.from_environment()
        logger.info(f"Starting resilience API v{VERSION}")
        await app.state.runtime.start()
        yield
        logger.info("Shutting down resilience API")
        await app.state.runtime.stop()

    app = FastAPI(
        title="Tool Server Resilience API",
        description="Health, alerting and recovery visibility for the tool-invocation server.",
        version=VERSION,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health classification and Prometheus metrics"},
            {"name": "alerts", "description": "Active alerts and alert rules"},
            {"name": "recovery", "description": "Recovery statistics and recent errors"},
        ]
    )
    app.state.runtime = runtime

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with consistent error format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                message=str(exc.detail),
                correlation_id=CORRELATION_ID.get(),
                timestamp=datetime.now(timezone.utc)
            ).model_dump(mode="json")
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception("Unhandled exception in API request", path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="InternalServerError",
                message="An unexpected error occurred. Please try again later.",
                details={"exception_type": exc.__class__.__name__} if DEBUG else None,
                correlation_id=CORRELATION_ID.get(),
                timestamp=datetime.now(timezone.utc)
            ).model_dump(mode="json")
        )

    track_http_requests(app, logger)

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(recovery.router)

    return app
