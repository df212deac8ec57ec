"""Custom middleware for request tracking, tracing, access logging and request metrics."""

import logging
import re
import time
import uuid
from typing import Callable, Optional

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import settings
from .observability import metrics_collector

logger = logging.getLogger(__name__)

# Bodies on these paths carry pickup PINs
SENSITIVE_PATH_PREFIXES = ("/v1/pickup/",)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique request ID to each request.

    The request ID is taken from the X-Request-ID header or generated, echoed
    back on the response and bound into the structlog context for the
    duration of the request.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[self.header_name] = request_id
        return response


class TraceContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that handles W3C Trace Context headers.

    https://www.w3.org/TR/trace-context/
    """

    TRACEPARENT = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")

    def _parse_traceparent(self, traceparent: str) -> Optional[dict]:
        """Parse a version-00 traceparent header, rejecting all-zero ids."""
        match = self.TRACEPARENT.match(traceparent)
        if not match:
            return None

        version, trace_id, parent_id, flags = match.groups()
        if version != "00" or trace_id == "0" * 32 or parent_id == "0" * 16:
            return None

        return {"trace_id": trace_id, "parent_id": parent_id, "flags": flags}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        traceparent = request.headers.get("traceparent")
        tracestate = request.headers.get("tracestate")
        incoming = self._parse_traceparent(traceparent) if traceparent else None

        if incoming:
            trace_id, parent_span_id, flags = incoming["trace_id"], incoming["parent_id"], incoming["flags"]
        else:
            trace_id, parent_span_id, flags = uuid.uuid4().hex, None, "01"

        span_id = uuid.uuid4().hex[:16]
        request.state.trace_context = {
            "trace_id": trace_id,
            "span_id": span_id,
            "parent_span_id": parent_span_id,
            "flags": flags,
            "tracestate": tracestate,
        }

        response = await call_next(request)

        response.headers["traceparent"] = f"00-{trace_id}-{span_id}-{flags}"
        if tracestate:
            response.headers["tracestate"] = tracestate
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs HTTP requests and records request metrics.

    Request bodies are only logged when enabled and never for paths that
    carry pickup PINs.
    """

    def __init__(
        self,
        app: ASGIApp,
        log_request_body: bool = False,
        skip_paths: Optional[list] = None,
    ):
        super().__init__(app)
        self.log_request_body = log_request_body
        self.skip_paths = skip_paths or ["/health", "/metrics", "/favicon.ico"]

    def _should_log(self, path: str) -> bool:
        return path not in self.skip_paths

    def _may_log_body(self, request: Request) -> bool:
        return (
            self.log_request_body
            and request.method in ("POST", "PUT", "PATCH")
            and not request.url.path.startswith(SENSITIVE_PATH_PREFIXES)
        )

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request."""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self._should_log(request.url.path):
            return await call_next(request)

        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", "unknown")
        trace_context = getattr(request.state, "trace_context", {})

        log_data = {
            "request_id": request_id,
            "trace_id": trace_context.get("trace_id", "unknown"),
            "span_id": trace_context.get("span_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
            "client_ip": self._get_client_ip(request),
            "user_agent": request.headers.get("User-Agent", "unknown"),
        }

        if self._may_log_body(request):
            body = await request.body()
            if body:
                log_data["request_body"] = body.decode("utf-8", errors="replace")[:1000]

        logger.info("HTTP request started", extra=log_data)

        error = None
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            status_code = 500
            error = str(e)
            logger.error("Unhandled error escaped the application", extra=log_data, exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "type": "https://example.com/problems/internal-server-error",
                    "title": "Internal Server Error",
                    "status": 500,
                    "request_id": request_id,
                }
            )

        duration = time.perf_counter() - start_time
        metrics_collector.record_request(request.method, request.url.path, status_code, duration)

        log_data.update({
            "status_code": status_code,
            "duration_ms": round(duration * 1000, 2),
        })
        if error:
            log_data["error"] = error

        if status_code >= 500:
            logger.error("HTTP request completed with server error", extra=log_data)
        elif status_code >= 400:
            logger.warning("HTTP request completed with client error", extra=log_data)
        else:
            logger.info("HTTP request completed successfully", extra=log_data)

        return response


def setup_middleware(app, enable_logging: bool = True) -> None:
    """
    Setup all middleware on the FastAPI app.

    Last added runs first, so request IDs and trace context exist before logging.
    """
    if enable_logging:
        app.add_middleware(
            LoggingMiddleware,
            log_request_body=settings.debug and not settings.is_production,
        )

    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestIDMiddleware)
