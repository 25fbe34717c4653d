"""
Logging middleware for request/response logging.

Logs every HTTP request with timing and records request metrics.
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from lms_notify.logging_config import get_logger
from lms_notify.routes.metrics import track_request

logger = get_logger(component="http")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status_code to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        route = request.url.path
        request_logger = logger.bind(route=route, method=request.method)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            track_request(request.method, route, 500, duration)
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e),
            )
            raise

        duration = time.time() - start_time
        track_request(request.method, route, response.status_code, duration)
        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        return response
