"""
NoteX Backend — Request Logging Middleware
============================================

What:  One access-log line per HTTP request: method, path, status, duration.
Why:   Uvicorn's access log has no request ID and no duration; this one has
       both, and picks the log level from the status class so 5xx responses
       surface as errors.

What we log vs what we DON'T log (privacy):
    Log:       method, path, status, duration, client IP, request ID
    Don't log: request bodies (Telegram initData, note text), Authorization
               headers, Stripe signatures, file contents
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from notex.middleware.request_id import request_id_var

logger = logging.getLogger("notex.access")

# Probed every few seconds by Docker/load balancers
SKIPPED_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Typical durations:
        GET /api/notes:          10-50ms (catalog query with aggregates)
        POST /api/ai/*:          1-8s (Gemini call dominates)
        POST /webhooks/stripe:   5-30ms
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in SKIPPED_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
