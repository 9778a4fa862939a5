"""
Fleetwatch HTTP Middleware
==========================
Request lifecycle wrappers for the simulator API:

1. RequestIDMiddleware    - tags each request with an X-Request-ID
2. TimingMiddleware       - records latency and logs the request line
3. ErrorHandlerMiddleware - turns stray exceptions into a JSON 500
"""

import time
import uuid
import logging
import traceback

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

logger = logging.getLogger("fleetwatch.middleware")

SLOW_REQUEST_MS = 250


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Reuses the caller's X-Request-ID when present, otherwise mints a short one.
    The id is stored on request.state so handlers and logs can reference it.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Adds X-Response-Time and logs every request, flagging slow ones."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"

        request_id = getattr(request.state, "request_id", "-")
        line = f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} in {elapsed_ms:.0f}ms"
        if elapsed_ms > SLOW_REQUEST_MS:
            logger.warning(f"SLOW {line}")
        else:
            logger.info(line)
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Last line of defence for exceptions nothing else handled.
    The traceback goes to the log; the client only gets the request id.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"[{request_id}] {request.method} {request.url.path} failed: "
                f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_server_error",
                    "message": "The simulator hit an unexpected error.",
                    "request_id": request_id,
                },
            )
