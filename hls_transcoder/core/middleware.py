"""HTTP middleware for metrics, correlation ids, tracing and access logs.

Registration order in main.py makes MetricsMiddleware outermost and
RequestLoggingMiddleware innermost, so logs and spans see the correlation id.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from hls_transcoder.core.logging import correlation_scope, get_correlation_id
from hls_transcoder.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from hls_transcoder.core.tracing import add_span_attributes, create_span

CORRELATION_ID_HEADER = "X-Correlation-ID"
MAX_CORRELATION_ID_LENGTH = 128

access_logger = logging.getLogger("hls_transcoder.access")


def route_template(request: Request) -> str:
    """Matched route path, e.g. /transcode, or "unmatched".

    Labels use the template rather than the raw path so unknown URLs
    cannot grow the label set.
    """
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count and time requests per route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        status_code = 500
        start = time.perf_counter()

        with HTTP_REQUESTS_IN_PROGRESS.labels(method=method).track_inprogress():
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                route = route_template(request)
                HTTP_REQUEST_DURATION_SECONDS.labels(method=method, route=route).observe(
                    time.perf_counter() - start
                )
                HTTP_REQUESTS_TOTAL.labels(
                    method=method, route=route, status_code=str(status_code)
                ).inc()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind the request's correlation id and echo it in the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(CORRELATION_ID_HEADER, "")[:MAX_CORRELATION_ID_LENGTH]
        correlation_id = incoming or str(uuid.uuid4())

        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response


class TracingMiddleware(BaseHTTPMiddleware):
    """Wrap each request in a SERVER span."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with create_span(
            f"{request.method} {request.url.path}",
            attributes={
                "http.request.method": request.method,
                "url.path": request.url.path,
                "url.scheme": request.url.scheme,
                "user_agent.original": request.headers.get("user-agent", ""),
                "correlation_id": get_correlation_id() or "",
            },
            kind=trace.SpanKind.SERVER,
        ):
            response = await call_next(request)
            add_span_attributes({
                "http.route": route_template(request),
                "http.response.status_code": response.status_code,
            })
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            access_logger.exception(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            raise

        access_logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "client_ip": request.client.host if request.client else None,
            },
        )
        return response


__all__ = [
    "MetricsMiddleware",
    "CorrelationIdMiddleware",
    "TracingMiddleware",
    "RequestLoggingMiddleware",
]
