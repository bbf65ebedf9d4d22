"""
NoteX Backend — Request ID Middleware
=======================================

What:  Assigns a correlation ID to each request and returns it in X-Request-ID.
Why:   Every log line and every error envelope of one request carries the same
       ID, so a user-reported error can be matched to its server logs.
How:   Reuses a client-supplied X-Request-ID (the mini-app sends one per user
       action) or generates a short UUID, stores it in a ContextVar for
       loggers/handlers and in request.state for route handlers.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

MAX_CLIENT_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagates or generates X-Request-ID."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # 8 chars is enough for correlation and keeps log lines short
        rid = request.headers.get("X-Request-ID", "")[:MAX_CLIENT_ID_LENGTH] or str(uuid.uuid4())[:8]

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
