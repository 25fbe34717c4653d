"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the API and infrastructure failures
from the worker and sweeper loops.
"""
import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from lms_notify.config import settings
from lms_notify.logging_config import get_logger


logger = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI, arq and SQLAlchemy integrations.
    
    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN
    
    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return
    
    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            ArqIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )
    
    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """Tag events with the pipeline component that raised them."""
    event.setdefault("tags", {}).setdefault("service", "notification-pipeline")
    return event


def capture_exception(exc_info=None, **tags):
    """
    Capture an exception to Sentry.
    
    Usage:
        try:
            # some code
        except Exception:
            capture_exception(worker_id=worker_id)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in tags.items():
                scope.set_tag(key, value)
            sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info", **tags):
    """Report a non-exception event, e.g. a queue item that ran out of attempts."""
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in tags.items():
                scope.set_tag(key, value)
            sentry_sdk.capture_message(message, level=level)
