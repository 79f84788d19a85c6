"""Prometheus metrics for the intake API and the transcoding pipeline.

Everything is registered on a private registry served by GET /metrics.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "hls_transcoder_app",
    "Application information",
    registry=REGISTRY,
)


# Intake API
HTTP_REQUESTS_TOTAL = Counter(
    "hls_transcoder_http_requests_total",
    "HTTP requests by route template and status",
    ["method", "route", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "hls_transcoder_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "route"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "hls_transcoder_http_requests_in_progress",
    "HTTP requests currently being served",
    ["method"],
    registry=REGISTRY,
)


# Pipeline
TRANSCODE_JOBS_TOTAL = Counter(
    "hls_transcoder_jobs_total",
    "Transcoding runs by terminal status",
    ["status"],
    registry=REGISTRY,
)

TRANSCODE_JOB_DURATION_SECONDS = Histogram(
    "hls_transcoder_job_duration_seconds",
    "Wall-clock duration of a transcoding run",
    ["status"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600],
    registry=REGISTRY,
)

TRANSCODE_JOBS_IN_PROGRESS = Gauge(
    "hls_transcoder_jobs_in_progress",
    "Transcoding runs currently executing in this process",
    registry=REGISTRY,
)

ENCODER_INVOCATIONS_TOTAL = Counter(
    "hls_transcoder_encoder_invocations_total",
    "ffmpeg/ffprobe invocations by operation and outcome",
    ["operation", "status"],
    registry=REGISTRY,
)

ARTIFACT_UPLOADS_TOTAL = Counter(
    "hls_transcoder_artifact_uploads_total",
    "Artifact uploads by bucket and outcome",
    ["bucket", "status"],
    registry=REGISTRY,
)


def record_job_outcome(status: str, duration_seconds: float) -> None:
    """Count a finished run and observe its duration."""
    TRANSCODE_JOBS_TOTAL.labels(status=status).inc()
    TRANSCODE_JOB_DURATION_SECONDS.labels(status=status).observe(duration_seconds)


def get_metrics() -> bytes:
    """Render the registry in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Publish version and environment as an info metric."""
    APP_INFO.info({"version": version, "environment": environment})
