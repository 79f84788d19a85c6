"""Celery application configuration.

Used when TASK_BACKEND=celery; the in-process runner needs no broker.
"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from hls_transcoder.core.config import settings
from hls_transcoder.core.logging import setup_logging

celery_app = Celery(
    "hls_transcoder",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Hard ceiling above the pipeline's own job timeout, which fails the job first
    task_time_limit=int(settings.JOB_TIMEOUT_SECONDS) + 120,
    worker_prefetch_multiplier=1,
    # A job is never redelivered; a lost run leaves the record pending
    task_acks_late=False,
)

celery_app.autodiscover_tasks(["hls_transcoder.modules.transcoding"])


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the application's structured logging in worker processes."""
    setup_logging(
        level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
        json_format=settings.LOG_JSON,
    )
