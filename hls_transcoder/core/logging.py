"""Structured JSON logging with correlation ids.

Every record carries a correlation id: the X-Correlation-ID of the request
being served, or the video id of the pipeline run. Fields passed to the
log helpers (video_id, stage, bucket, key, ...) are emitted under "extra".
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from hls_transcoder.core.tracing import get_span_id, get_trace_id

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes of a bare LogRecord; anything else arrived through extra=
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation_id"}

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "botocore", "boto3", "s3transfer")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def get_correlation_id() -> Optional[str]:
    """Correlation id of the current context.

    Falls back to the active trace id, or None outside any request or run.
    """
    return correlation_id_var.get() or get_trace_id()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind a correlation id for the duration of a block.

    The previous value is restored on exit, so concurrent asyncio tasks
    never see each other's ids.
    """
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace_id = get_trace_id()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = get_span_id()

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
            }
            if self.include_stack_trace:
                entry["exception"]["stack_trace"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        extra = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamp each record with the current correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout through one handler.

    Args:
        level: Root log level name
        json_format: JSON lines if True, plain text otherwise
        include_stack_trace: Include tracebacks in JSON exception fields
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_info(logger: logging.Logger, message: str, **fields: Any) -> None:
    """Log at INFO with structured fields."""
    logger.info(message, extra=fields)


def log_warning(logger: logging.Logger, message: str, **fields: Any) -> None:
    """Log at WARNING with structured fields."""
    logger.warning(message, extra=fields)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Log at ERROR with structured fields and an optional exception.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception whose traceback is attached
        **fields: Additional context fields
    """
    logger.error(message, exc_info=exception, extra=fields)
