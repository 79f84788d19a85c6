"""FastAPI application entry point."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from fastapi.responses import PlainTextResponse

from hls_transcoder.core.config import settings
from hls_transcoder.core.database import dispose_engine
from hls_transcoder.core.logging import setup_logging
from hls_transcoder.core.metrics import get_content_type, get_metrics, set_app_info
from hls_transcoder.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from hls_transcoder.core.tracing import setup_tracing, shutdown_tracing
from hls_transcoder.modules.transcoding.router import router as transcoding_router
from hls_transcoder.modules.transcoding.tasks import get_local_runner

ENVIRONMENT = "development" if settings.DEBUG else "production"

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

if settings.TRACING_ENABLED:
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.DEBUG,
    )

set_app_info(version=settings.VERSION, environment=ENVIRONMENT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Running local jobs are cancelled so their staging areas are removed
    await get_local_runner().shutdown()
    await dispose_engine()
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Transcodes uploaded videos into adaptive-bitrate HLS renditions and a thumbnail.",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Liveness and metrics",
        },
        {
            "name": "transcoding",
            "description": "Start HLS transcoding of an uploaded video",
        },
    ],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/", tags=["health"], response_class=PlainTextResponse)
async def root() -> str:
    """Liveness check."""
    return "Transcoding service is running."


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(transcoding_router)


def run() -> None:
    """Start the HTTP server."""
    uvicorn.run(
        "hls_transcoder.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    run()
