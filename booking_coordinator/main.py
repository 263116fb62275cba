"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from booking_coordinator.api.v1.router import api_router
from booking_coordinator.config import settings
from booking_coordinator.core.background_tasks import (
    start_recovery_scheduler,
    stop_recovery_scheduler,
)
from booking_coordinator.core.exceptions import AppException, SignatureVerificationFailed
from booking_coordinator.core.immutability import register_immutability_enforcement
from booking_coordinator.core.middleware import RequestLoggingMiddleware
from booking_coordinator.database import close_db, init_db

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Background task handle
_recovery_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    global _recovery_task

    # Startup
    register_immutability_enforcement()
    if settings.debug:
        await init_db()

    if settings.run_recovery_in_process:
        _recovery_task = asyncio.create_task(start_recovery_scheduler())

    yield

    # Shutdown
    stop_recovery_scheduler()
    if _recovery_task:
        _recovery_task.cancel()
        try:
            await _recovery_task
        except asyncio.CancelledError:
            pass

    from booking_coordinator.gateways.calendly_client import calendly_client
    from booking_coordinator.services.notification_service import notification_service

    await calendly_client.close()
    await notification_service.sender.close()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Booking lifecycle coordinator for scheduling and payment providers",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Exception handlers
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        """Handle custom application exceptions."""
        if isinstance(exc, SignatureVerificationFailed):
            logger.warning(f"Rejected {exc.provider} webhook on {request.url.path}: {exc.reason}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    # Middleware (first added = last executed)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "booking_coordinator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
