"""
VoxNotes Backend — Request ID Middleware
==========================================

What:  Assigns a correlation ID to every request and echoes it in the
       `X-Request-ID` response header.
How:   The ID is kept in a ContextVar, so every log line emitted while the
       request is handled (including inside the orchestrator) can carry it
       through `RequestIDLogFilter`. Error bodies include it as `request_id`.

A client-supplied `X-Request-ID` is reused (trimmed to 64 chars) so a
cron runner or frontend can correlate its own logs with ours.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

MAX_REQUEST_ID_LENGTH = 64


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every log record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "").strip()
        rid = supplied[:MAX_REQUEST_ID_LENGTH] if supplied else uuid.uuid4().hex[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
