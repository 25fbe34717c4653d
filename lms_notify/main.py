"""
LMS Notifications - notification delivery pipeline

FastAPI application entry point for the admin and provider-callback API.
"""
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.config import settings
from lms_notify.database import get_db
from lms_notify.logging_config import configure_logging, get_logger
from lms_notify.sentry_config import configure_sentry
from lms_notify.middleware.logging import LoggingMiddleware
from lms_notify.routes.metrics import router as metrics_router

from lms_notify.routes.queue_admin import router as queue_admin_router
from lms_notify.routes.deliveries import admin_router as deliveries_admin_router
from lms_notify.routes.deliveries import router as deliveries_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="api")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Priority queue and email delivery tracking for library notifications",
)

app.add_middleware(LoggingMiddleware)

# Metrics first so it's always available
app.include_router(metrics_router)
app.include_router(queue_admin_router)
app.include_router(deliveries_admin_router)
app.include_router(deliveries_router)


@app.get("/")
async def root():
    """Service banner."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    """Detailed health check."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_check_failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {
        "status": "healthy",
        "database": "connected"
    }
