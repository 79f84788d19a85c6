"""Background execution of transcoding runs.

Runs go either to an in-process asyncio runner (TASK_BACKEND=local) or to
a Celery worker (TASK_BACKEND=celery). Both call the same pipeline and
neither retries a failed run.
"""

import asyncio
import logging
from typing import Optional

from celery import Task

from hls_transcoder.core.celery_app import celery_app
from hls_transcoder.core.config import settings
from hls_transcoder.core.database import dispose_engine
from hls_transcoder.core.logging import log_error, log_info
from hls_transcoder.modules.transcoding.service import PipelineResult, get_pipeline

logger = logging.getLogger(__name__)


class TranscodeTask(Task):
    """Base task for transcoding runs.

    The pipeline records failures itself, so the task never retries.
    """
    abstract = True
    max_retries = 0


@celery_app.task(bind=True, base=TranscodeTask, name="transcoding.transcode_video")
def transcode_video_task(self: TranscodeTask, video_id: str) -> dict:
    """Transcode a video to HLS.

    Args:
        video_id: ID of the video row

    Returns:
        dict: Terminal status and published paths
    """
    return asyncio.run(_transcode_video_async(video_id))


async def _transcode_video_async(video_id: str) -> dict:
    """Async implementation of the Celery task."""
    try:
        result = await get_pipeline().run(video_id)
    finally:
        # Pooled connections belong to this task's event loop
        await dispose_engine()
    return _result_to_dict(result)


def _result_to_dict(result: PipelineResult) -> dict:
    return {
        "video_id": result.video_id,
        "status": result.status.value,
        "failed_stage": result.failed_stage.value if result.failed_stage else None,
        "error": result.error_message,
        "hls_path": result.hls_path,
        "thumbnail_path": result.thumbnail_path,
        "duration_seconds": round(result.duration_seconds, 3),
    }


class LocalJobRunner:
    """Runs pipeline jobs as asyncio tasks in the current process.

    Tasks are held until they finish so they are not garbage collected
    mid-run. shutdown() cancels what is still running and waits for it,
    which lets every job remove its staging area.
    """

    def __init__(self, pipeline=None):
        self._pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()

    @property
    def pipeline(self):
        if self._pipeline is None:
            self._pipeline = get_pipeline()
        return self._pipeline

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def submit(self, video_id: str) -> asyncio.Task:
        """Schedule a run and return immediately."""
        task = asyncio.create_task(
            self._run(video_id), name=f"transcode-{video_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, video_id: str) -> Optional[PipelineResult]:
        try:
            return await self.pipeline.run(video_id)
        except asyncio.CancelledError:
            log_info(logger, "Transcode cancelled", video_id=video_id)
            raise
        except Exception as e:
            # run() handles pipeline failures; this is a bug in the runner path
            log_error(logger, "Transcode task crashed", e, video_id=video_id)
            return None

    async def shutdown(self) -> None:
        """Cancel running jobs and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log_info(logger, "Cancelled running transcodes", count=len(tasks))


_runner: Optional[LocalJobRunner] = None


def get_local_runner() -> LocalJobRunner:
    """Get the process-wide local runner."""
    global _runner
    if _runner is None:
        _runner = LocalJobRunner()
    return _runner


def dispatch_transcode(video_id: str) -> None:
    """Hand a run to the configured background backend.

    Raises:
        ValueError: Unknown TASK_BACKEND
    """
    backend = settings.TASK_BACKEND.lower()
    if backend == "local":
        get_local_runner().submit(video_id)
    elif backend == "celery":
        transcode_video_task.delay(video_id)
    else:
        raise ValueError(f"Unsupported task backend: {settings.TASK_BACKEND}")
    log_info(logger, "Transcode dispatched", video_id=video_id, backend=backend)
