"""Artifact enumeration and concurrent upload to the blob store.

HLS files are published under {video_id}/{relative path} in the HLS bucket,
the thumbnail as {video_id}.png in the thumbnail bucket.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from hls_transcoder.core.logging import log_warning
from hls_transcoder.core.metrics import ARTIFACT_UPLOADS_TOTAL
from hls_transcoder.core.storage import BlobStore, StorageResult
from hls_transcoder.modules.transcoding.abr import MASTER_PLAYLIST_NAME
from hls_transcoder.modules.transcoding.ffmpeg import EncodeError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".png": "image/png",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(path) -> str:
    """Get the content type for an artifact from its suffix."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def hls_key(video_id: str, relative_path) -> str:
    """Blob key of an HLS file, using forward slashes on every platform."""
    return f"{video_id}/{Path(relative_path).as_posix()}"


def master_playlist_key(video_id: str) -> str:
    return hls_key(video_id, MASTER_PLAYLIST_NAME)


def thumbnail_key(video_id: str) -> str:
    return f"{video_id}.png"


@dataclass(frozen=True)
class Artifact:
    """A produced file and where it is published."""
    local_path: Path
    bucket: str
    key: str
    content_type: str
    required: bool = True


@dataclass
class UploadOutcome:
    """Result of uploading one artifact."""
    artifact: Artifact
    result: Optional[StorageResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class UploadReport:
    """Outcomes of an upload fan-out, in enumeration order."""
    outcomes: list[UploadOutcome] = field(default_factory=list)

    def succeeded(self, artifact: Artifact) -> bool:
        return any(o.artifact == artifact and o.ok for o in self.outcomes)

    @property
    def failures(self) -> list[UploadOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def first_fatal_error(self) -> Optional[UploadOutcome]:
        """The first failed required upload, if any."""
        for outcome in self.outcomes:
            if not outcome.ok and outcome.artifact.required:
                return outcome
        return None


def enumerate_hls_artifacts(video_id: str, hls_dir, bucket: str) -> list[Artifact]:
    """List every file under the HLS output directory as a required artifact.

    Raises:
        EncodeError: The master playlist is missing
    """
    hls_dir = Path(hls_dir)
    if not (hls_dir / MASTER_PLAYLIST_NAME).is_file():
        raise EncodeError(f"Master playlist missing from {hls_dir}")

    artifacts = []
    for path in sorted(p for p in hls_dir.rglob("*") if p.is_file()):
        relative = path.relative_to(hls_dir)
        artifacts.append(
            Artifact(
                local_path=path,
                bucket=bucket,
                key=hls_key(video_id, relative),
                content_type=content_type_for(path),
            )
        )
    return artifacts


def thumbnail_artifact(video_id: str, path, bucket: str) -> Artifact:
    """Thumbnail artifact. Its upload never fails the job."""
    return Artifact(
        local_path=Path(path),
        bucket=bucket,
        key=thumbnail_key(video_id),
        content_type=content_type_for(path),
        required=False,
    )


async def upload_artifacts(
    blob_store: BlobStore,
    artifacts: Sequence[Artifact],
    concurrency: int = 8,
) -> UploadReport:
    """Upload artifacts concurrently and wait for all of them.

    Failures are collected rather than raised, so one failed upload never
    abandons the others mid-flight.

    Args:
        blob_store: Destination store
        artifacts: Artifacts to upload
        concurrency: Maximum uploads in flight

    Returns:
        UploadReport with one outcome per artifact
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _upload_one(artifact: Artifact) -> StorageResult:
        async with semaphore:
            data = await asyncio.to_thread(artifact.local_path.read_bytes)
            return await blob_store.upload(
                artifact.bucket,
                artifact.key,
                data,
                content_type=artifact.content_type,
            )

    results = await asyncio.gather(
        *(_upload_one(artifact) for artifact in artifacts),
        return_exceptions=True,
    )

    report = UploadReport()
    for artifact, result in zip(artifacts, results):
        if isinstance(result, BaseException):
            ARTIFACT_UPLOADS_TOTAL.labels(bucket=artifact.bucket, status="failure").inc()
            log_warning(
                logger,
                "Artifact upload failed",
                bucket=artifact.bucket,
                key=artifact.key,
                required=artifact.required,
                error=str(result),
            )
            report.outcomes.append(UploadOutcome(artifact=artifact, error=result))
        else:
            ARTIFACT_UPLOADS_TOTAL.labels(bucket=artifact.bucket, status="success").inc()
            report.outcomes.append(UploadOutcome(artifact=artifact, result=result))
    return report
