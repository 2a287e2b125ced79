"""
FastAPI Application Entry Point.

This is the main application file for the Ride Settlement Backend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.db.session import engine, Base
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.core.redis_client import ping_redis
from backend.app.services.notification_service import drain_pending_notifications
from backend.app.services.scheduler import run_scheduler_forever

# Import models to ensure they are registered with Base
from backend.app.models.fee_policy import FeePolicy
from backend.app.models.trip import Trip
from backend.app.models.reservation import Reservation
from backend.app.models.payment import Payment
from backend.app.models.cancellation import Cancellation
from backend.app.models.refund import Refund
from backend.app.models.driver_payout import DriverPayout
from backend.app.models.audit_log import AuditLog
from backend.app.models.notification import Notification
from backend.app.models.dlq import DeadLetterQueue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the settlement scheduler when enabled.
    3. On shutdown stops the scheduler and lets in-flight notifications finish.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler_task = None
    if settings.enable_scheduler:
        scheduler_task = asyncio.create_task(run_scheduler_forever())
    else:
        logger.info("Scheduler disabled; use /v1/admin/ops/complete-expired-trips to run it by hand")

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
    await drain_pending_notifications()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Settlement and lifecycle engine for shared-ride trips",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        # Only the scheduler lock needs redis; requests are served without it
        "redis": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
