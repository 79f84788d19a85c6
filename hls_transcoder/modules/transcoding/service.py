"""Transcoding pipeline orchestrator.

Runs one video through fetch, download, thumbnail, transcode, upload and
finalize, and moves its record to ready or failed. The staging area is
removed on every exit path and the whole run is bounded by a timeout.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from hls_transcoder.core.config import settings
from hls_transcoder.core.logging import correlation_scope, log_error, log_info, log_warning
from hls_transcoder.core.metrics import TRANSCODE_JOBS_IN_PROGRESS, record_job_outcome
from hls_transcoder.core.storage import BlobStore, StorageError, UploadError, get_blob_store
from hls_transcoder.core.tracing import add_span_attributes, create_span, record_exception
from hls_transcoder.modules.transcoding.abr import ABRLadder
from hls_transcoder.modules.transcoding.ffmpeg import EncodeError, FFmpegTranscoder
from hls_transcoder.modules.transcoding.staging import StagingArea, StagingError, staging_area
from hls_transcoder.modules.transcoding.storage import (
    enumerate_hls_artifacts,
    master_playlist_key,
    thumbnail_artifact,
    upload_artifacts,
)
from hls_transcoder.modules.video.models import VideoStatus
from hls_transcoder.modules.video.repository import RecordStore, StoreError

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Stages of a transcoding run, in order."""
    PREPARING = "preparing"
    FETCHING = "fetching"
    DOWNLOADING = "downloading"
    EXTRACTING_THUMBNAIL = "extracting_thumbnail"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"


@dataclass
class PipelineConfig:
    """Buckets, staging and limits for a pipeline."""
    raw_bucket: str = "raw_uploads"
    hls_bucket: str = "hls"
    thumbnail_bucket: str = "thumbnails"
    staging_root: str = "/tmp/hls-transcoder"
    job_timeout: Optional[float] = 3600.0
    upload_concurrency: int = 8
    thumbnail_timestamp: str = "00:00:02"
    thumbnail_size: str = "640x360"
    thumbnail_timeout: Optional[float] = 60.0

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            raw_bucket=settings.RAW_BUCKET,
            hls_bucket=settings.HLS_BUCKET,
            thumbnail_bucket=settings.THUMBNAIL_BUCKET,
            staging_root=settings.STAGING_ROOT,
            job_timeout=settings.JOB_TIMEOUT_SECONDS,
            upload_concurrency=settings.UPLOAD_CONCURRENCY,
            thumbnail_timestamp=settings.THUMBNAIL_TIMESTAMP,
            thumbnail_size=settings.THUMBNAIL_SIZE,
            thumbnail_timeout=settings.THUMBNAIL_TIMEOUT_SECONDS,
        )


@dataclass
class PipelineResult:
    """Outcome of one run."""
    video_id: str
    status: VideoStatus
    failed_stage: Optional[PipelineStage] = None
    error_message: Optional[str] = None
    hls_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == VideoStatus.READY


@dataclass
class _RunState:
    stage: PipelineStage = PipelineStage.PREPARING


class TranscodePipeline:
    """Orchestrates transcoding runs.

    Collaborators are injected; the pipeline itself holds no per-job state,
    so one instance serves any number of concurrent runs.
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        transcoder: FFmpegTranscoder,
        ladder: Optional[ABRLadder] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.transcoder = transcoder
        self.ladder = ladder or ABRLadder.from_settings()
        self.config = config or PipelineConfig.from_settings()

    async def run(self, video_id: str) -> PipelineResult:
        """Run the pipeline for a video. Never raises for pipeline failures.

        Args:
            video_id: ID of the video row to process

        Returns:
            PipelineResult with the terminal status
        """
        start = time.perf_counter()
        state = _RunState()

        with TRANSCODE_JOBS_IN_PROGRESS.track_inprogress(), correlation_scope(video_id), create_span(
            "transcode.pipeline", attributes={"video.id": video_id}
        ):
            log_info(logger, "Transcode started", video_id=video_id)
            result = await self._run_guarded(video_id, state)
            add_span_attributes({"transcode.status": result.status.value})

        result.duration_seconds = time.perf_counter() - start
        record_job_outcome(result.status.value, result.duration_seconds)
        return result

    async def _run_guarded(self, video_id: str, state: _RunState) -> PipelineResult:
        try:
            with staging_area(video_id, self.config.staging_root, self.ladder.names) as area:
                return await asyncio.wait_for(
                    self._execute(video_id, area, state),
                    timeout=self.config.job_timeout,
                )
        except asyncio.TimeoutError as e:
            return await self._fail(
                video_id,
                state,
                f"Job exceeded timeout of {self.config.job_timeout}s",
                e,
            )
        except (StoreError, StorageError, EncodeError, StagingError) as e:
            return await self._fail(video_id, state, str(e), e)
        except Exception as e:
            return await self._fail(video_id, state, f"Unexpected error: {e}", e)

    @contextmanager
    def _stage(self, state: _RunState, stage: PipelineStage) -> Iterator[None]:
        state.stage = stage
        log_info(logger, "Stage started", stage=stage.value)
        with create_span(f"transcode.{stage.value}"):
            yield

    async def _execute(
        self, video_id: str, area: StagingArea, state: _RunState
    ) -> PipelineResult:
        cfg = self.config

        with self._stage(state, PipelineStage.FETCHING):
            job = await self.record_store.get_job(video_id)

        with self._stage(state, PipelineStage.DOWNLOADING):
            source_path = area.source_path(job.raw_path)
            size = await self.blob_store.download_to_file(
                cfg.raw_bucket, job.raw_path, str(source_path)
            )
            log_info(logger, "Source downloaded", key=job.raw_path, size_bytes=size)

        with self._stage(state, PipelineStage.EXTRACTING_THUMBNAIL):
            thumbnail = await self._extract_thumbnail(str(source_path), area)

        with self._stage(state, PipelineStage.TRANSCODING):
            encode = await self.transcoder.transcode_to_abr(
                str(source_path), str(area.hls_dir), self.ladder
            )
            log_info(
                logger,
                "Transcode finished",
                renditions=encode.variants,
                encode_seconds=round(encode.duration, 2),
            )

        with self._stage(state, PipelineStage.UPLOADING):
            artifacts = enumerate_hls_artifacts(video_id, area.hls_dir, cfg.hls_bucket)
            thumb = None
            if thumbnail is not None:
                thumb = thumbnail_artifact(video_id, thumbnail, cfg.thumbnail_bucket)
                artifacts.append(thumb)

            report = await upload_artifacts(
                self.blob_store, artifacts, cfg.upload_concurrency
            )
            fatal = report.first_fatal_error
            if fatal is not None:
                raise UploadError(
                    f"Failed to upload {fatal.artifact.bucket}/{fatal.artifact.key}: "
                    f"{fatal.error}"
                ) from fatal.error

            thumbnail_path = None
            if thumb is not None:
                if report.succeeded(thumb):
                    thumbnail_path = thumb.key
                else:
                    log_warning(logger, "Continuing without thumbnail", key=thumb.key)
            log_info(logger, "Artifacts uploaded", count=len(artifacts))

        with self._stage(state, PipelineStage.FINALIZING):
            hls_path = master_playlist_key(video_id)
            await self.record_store.update_job_status(
                video_id,
                VideoStatus.READY,
                hls_path=hls_path,
                thumbnail_path=thumbnail_path,
            )

        log_info(
            logger,
            "Transcode completed",
            video_id=video_id,
            hls_path=hls_path,
            thumbnail_path=thumbnail_path,
        )
        return PipelineResult(
            video_id=video_id,
            status=VideoStatus.READY,
            hls_path=hls_path,
            thumbnail_path=thumbnail_path,
        )

    async def _extract_thumbnail(self, source_path: str, area: StagingArea) -> Optional[str]:
        """Extract the thumbnail, or return None if the encoder fails."""
        cfg = self.config
        try:
            result = await self.transcoder.extract_thumbnail(
                source_path,
                str(area.thumbnail_dir),
                timestamp=cfg.thumbnail_timestamp,
                size=cfg.thumbnail_size,
                timeout=cfg.thumbnail_timeout,
            )
        except EncodeError as e:
            log_warning(
                logger,
                "Thumbnail extraction failed, continuing without thumbnail",
                error=str(e),
                returncode=e.returncode,
            )
            return None
        return result.output_path

    async def _fail(
        self,
        video_id: str,
        state: _RunState,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> PipelineResult:
        """Log the failure and mark the video failed, best-effort."""
        if exception is not None:
            record_exception(exception)
        log_error(
            logger,
            "Transcode failed",
            exception,
            video_id=video_id,
            stage=state.stage.value,
            error=message,
        )
        try:
            await self.record_store.update_job_status(video_id, VideoStatus.FAILED)
        except StoreError as e:
            log_error(logger, "Failed to mark video as failed", e, video_id=video_id)

        return PipelineResult(
            video_id=video_id,
            status=VideoStatus.FAILED,
            failed_stage=state.stage,
            error_message=message,
        )


_pipeline: Optional[TranscodePipeline] = None


def get_pipeline() -> TranscodePipeline:
    """Get the process-wide pipeline built from settings."""
    global _pipeline
    if _pipeline is None:
        _pipeline = TranscodePipeline(
            record_store=RecordStore(),
            blob_store=get_blob_store(),
            transcoder=FFmpegTranscoder(
                ffmpeg_path=settings.FFMPEG_PATH,
                ffprobe_path=settings.FFPROBE_PATH,
                probe_timeout=settings.PROBE_TIMEOUT_SECONDS,
            ),
        )
    return _pipeline


def reset_pipeline() -> None:
    """Drop the cached pipeline so the next call rebuilds it."""
    global _pipeline
    _pipeline = None
