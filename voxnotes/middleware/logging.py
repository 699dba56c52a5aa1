"""
VoxNotes Backend — Access Log Middleware
==========================================

What:  One access-log line per request on the `voxnotes.access` logger.
How:   The level follows the outcome: 5xx → ERROR, 4xx → WARNING, and a
       request slower than SLOW_REQUEST_MS is a WARNING even when it
       succeeded (a batch run that took minutes deserves attention).
       /health is skipped; probes hit it every few seconds.

Privacy:
    Request bodies and the Authorization / X-User-ID headers are never
    logged. Owner IDs appear only in orchestrator logs.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("voxnotes.access")

UNLOGGED_PATHS = frozenset({"/health"})

SLOW_REQUEST_MS = 10_000


def access_log_level(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400 or duration_ms >= SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        # request_id is attached by RequestIDLogFilter on the handler
        logger.log(
            access_log_level(response.status_code, elapsed_ms),
            "%s %s → %d in %.1fms (client %s)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.client.host if request.client else "unknown",
        )
        return response
