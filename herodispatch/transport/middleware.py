# herodispatch/transport/middleware.py
"""
HTTP middleware: request ids, access logging, last-resort error handling.

Added in the order ErrorHandling, RequestLogging, RequestID; the last one
added is outermost, so both others already see the request id.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from herodispatch.infra.logging_config import LogContext, get_logger
from herodispatch.infra.metrics import observe_histogram

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id (the client's, if it sent a sane one)"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
            request_id = incoming
        else:
            request_id = uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access line per request plus a latency histogram"""

    # Probes hit these every few seconds
    QUIET_PATHS = frozenset({"/health", "/ready"})

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        access = LogContext(logger, request_id=_request_id(request))
        method, path = request.method, request.url.path
        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            elapsed_ms = (time.monotonic() - started) * 1000
            observe_histogram("http_request_duration_ms", elapsed_ms, method=method)
            line = f"{method} {path} status={status_code} duration={elapsed_ms:.1f}ms"
            fields = {"method": method, "path": path, "status_code": status_code, "duration_ms": elapsed_ms}
            if status_code >= 500:
                access.warning(line, extra=fields)
            else:
                access.info(line, extra=fields)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Unhandled exceptions become a 500 that reveals nothing but the request id"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error(
                f"Unhandled {exc.__class__.__name__} on {request.method} {request.url.path}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
