"""OpenTelemetry tracing for the intake API and pipeline runs.

Each HTTP request gets a SERVER span; each pipeline run gets an INTERNAL
span with one child per stage. Until setup_tracing() runs, the API's
no-op provider is in effect and spans are free.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Span, SpanContext, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "hls_transcoder"

_provider: Optional[TracerProvider] = None


def _otlp_exporter(endpoint: str) -> Optional[SpanExporter]:
    """Build the OTLP gRPC exporter shipped in the otlp extra."""
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning(
            "OTLP endpoint configured but the OTLP exporter is not installed",
            extra={"otlp_endpoint": endpoint},
        )
        return None
    return OTLPSpanExporter(endpoint=endpoint)


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> TracerProvider:
    """Install the SDK tracer provider.

    Args:
        service_name: Name reported in span resources
        service_version: Version reported in span resources
        environment: Deployment environment
        otlp_endpoint: Collector endpoint; spans are exported there when set
        enable_console_export: Print finished spans to stdout

    Returns:
        The installed provider
    """
    global _provider

    provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": environment,
        })
    )

    exporters: list[SpanExporter] = []
    if otlp_endpoint:
        exporter = _otlp_exporter(otlp_endpoint)
        if exporter is not None:
            exporters.append(exporter)
    if enable_console_export:
        exporters.append(ConsoleSpanExporter())

    for exporter in exporters:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    _provider = provider

    logger.info(
        "Tracing initialized",
        extra={
            "service": service_name,
            "exporters": [type(e).__name__ for e in exporters],
        },
    )
    return provider


def get_tracer() -> trace.Tracer:
    """Tracer bound to whichever provider is installed."""
    return trace.get_tracer(TRACER_NAME)


def _current_span_context() -> Optional[SpanContext]:
    context = trace.get_current_span().get_span_context()
    return context if context.is_valid else None


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, if any."""
    context = _current_span_context()
    return format(context.trace_id, "032x") if context else None


def get_span_id() -> Optional[str]:
    """Hex span id of the active span, if any."""
    context = _current_span_context()
    return format(context.span_id, "016x") if context else None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Mapping] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Open a span and make it current for the block.

    Exceptions escaping the block are recorded on the span.
    """
    with get_tracer().start_as_current_span(
        name, kind=kind, attributes=dict(attributes or {})
    ) as span:
        yield span


def add_span_attributes(attributes: Mapping) -> None:
    """Set attributes on the active span."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attributes(dict(attributes))


def record_exception(exception: BaseException, attributes: Optional[Mapping] = None) -> None:
    """Attach a handled exception to the active span and mark it errored."""
    span = trace.get_current_span()
    if span.is_recording():
        span.record_exception(exception, attributes=dict(attributes or {}))
        span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and release the provider."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None
