"""
Access logging for the flag API.
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

# Load balancer health checks hit this every few seconds
QUIET_PATHS = frozenset({"/health"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; 5xx responses and crashes at error level."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        log = logger.bind(method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            log.exception(
                "Request failed",
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        if response.status_code >= 500:
            log.error("Request completed", status_code=response.status_code, duration_ms=duration_ms)
        else:
            log.info("Request completed", status_code=response.status_code, duration_ms=duration_ms)

        return response
