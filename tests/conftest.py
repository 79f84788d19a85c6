"""Shared fakes for pipeline tests.

No test needs ffmpeg, a database or S3: the encoder fake writes the files
ffmpeg would, the blob store is the local backend in a temp directory and
the record store keeps rows in a dict.
"""

import asyncio
import os
from pathlib import Path
from typing import Callable, Optional

import pytest

from hls_transcoder.core.storage import (
    BlobStore,
    LocalStorage,
    StorageConfig,
    UploadError,
)
from hls_transcoder.modules.transcoding.abr import MASTER_PLAYLIST_NAME, ABRLadder
from hls_transcoder.modules.transcoding.ffmpeg import THUMBNAIL_FILENAME, EncodeError, EncodeResult
from hls_transcoder.modules.transcoding.service import PipelineConfig, TranscodePipeline
from hls_transcoder.modules.video.repository import JobMetadata, StoreError, VideoNotFoundError


class FakeRecordStore:
    """In-memory record store."""

    def __init__(self, rows: Optional[dict] = None, fail_updates: bool = False):
        self.rows = rows or {}
        self.fail_updates = fail_updates
        self.updates: list[tuple] = []

    async def get_job(self, video_id: str) -> JobMetadata:
        if video_id not in self.rows:
            raise VideoNotFoundError(f"Video not found: {video_id}")
        return JobMetadata(id=video_id, raw_path=self.rows[video_id], status="pending")

    async def update_job_status(self, video_id, status, hls_path=None, thumbnail_path=None):
        self.updates.append((video_id, status, hls_path, thumbnail_path))
        if self.fail_updates:
            raise StoreError("database unavailable")
        return video_id in self.rows


class RecordingBlobStore(BlobStore):
    """Local blob store that records calls and can fail selected uploads."""

    def __init__(self, root: Path, fail_upload: Optional[Callable[[str, str], bool]] = None):
        super().__init__(LocalStorage(StorageConfig(backend="local", local_path=str(root))))
        self.root = Path(root)
        self.fail_upload = fail_upload
        self.calls: list[tuple] = []
        self.uploads: list[tuple[str, str, str]] = []

    def put(self, bucket: str, key: str, data: bytes) -> None:
        """Seed an object without recording a call."""
        path = self.root / bucket / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def has(self, bucket: str, key: str) -> bool:
        return (self.root / bucket / key).is_file()

    async def download_to_file(self, bucket, key, dest_path):
        self.calls.append(("download", bucket, key))
        return await super().download_to_file(bucket, key, dest_path)

    async def upload(self, bucket, key, data, content_type="application/octet-stream", overwrite=True):
        self.calls.append(("upload", bucket, key))
        if self.fail_upload is not None and self.fail_upload(bucket, key):
            raise UploadError(f"Injected failure for {bucket}/{key}")
        result = await super().upload(bucket, key, data, content_type, overwrite)
        self.uploads.append((bucket, key, content_type))
        return result


class FakeTranscoder:
    """Writes the files ffmpeg would produce for a ladder."""

    def __init__(
        self,
        fail_thumbnail: bool = False,
        fail_transcode: bool = False,
        skip_master: bool = False,
        transcode_delay: float = 0.0,
    ):
        self.fail_thumbnail = fail_thumbnail
        self.fail_transcode = fail_transcode
        self.skip_master = skip_master
        self.transcode_delay = transcode_delay
        self.calls: list[str] = []
        self.cancelled = False

    async def extract_thumbnail(self, input_path, output_dir, timestamp="00:00:02",
                                size="640x360", timeout=None):
        self.calls.append("thumbnail")
        if self.fail_thumbnail:
            raise EncodeError("Thumbnail extraction exited with code 1", returncode=1)
        output_path = os.path.join(output_dir, THUMBNAIL_FILENAME)
        Path(output_path).write_bytes(b"\x89PNG fake")
        return EncodeResult(output_path=output_path, returncode=0, duration=0.01)

    async def transcode_to_abr(self, input_path, output_dir, ladder: ABRLadder, timeout=None):
        self.calls.append("transcode")
        if self.transcode_delay:
            try:
                await asyncio.sleep(self.transcode_delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.fail_transcode:
            raise EncodeError("Transcode exited with code 1", returncode=1, stderr="bad input")

        out = Path(output_dir)
        for variant in ladder.variants:
            variant_dir = out / variant.name
            variant_dir.mkdir(parents=True, exist_ok=True)
            (variant_dir / "index.m3u8").write_text("#EXTM3U\n#EXTINF:10.0,\nsegment000.ts\n")
            (variant_dir / "segment000.ts").write_bytes(b"\x47" * 188)
            (variant_dir / "segment001.ts").write_bytes(b"\x47" * 188)
        if not self.skip_master:
            (out / MASTER_PLAYLIST_NAME).write_text(
                "#EXTM3U\n" + "".join(f"{v.name}/index.m3u8\n" for v in ladder.variants)
            )
        return EncodeResult(
            output_path=str(out / MASTER_PLAYLIST_NAME),
            returncode=0,
            duration=0.01,
            variants=ladder.names,
        )


def make_pipeline(
    tmp_path: Path,
    record_store=None,
    blob_store=None,
    transcoder=None,
    job_timeout: float = 10.0,
) -> TranscodePipeline:
    config = PipelineConfig(
        staging_root=str(tmp_path / "staging"),
        job_timeout=job_timeout,
        upload_concurrency=4,
        thumbnail_timeout=None,
    )
    return TranscodePipeline(
        record_store=record_store or FakeRecordStore(),
        blob_store=blob_store or RecordingBlobStore(tmp_path / "blobs"),
        transcoder=transcoder or FakeTranscoder(),
        ladder=ABRLadder.create_vod_ladder(),
        config=config,
    )


def staging_entries(tmp_path: Path) -> list[str]:
    root = tmp_path / "staging"
    return os.listdir(root) if root.exists() else []


@pytest.fixture
def blob_store(tmp_path: Path) -> RecordingBlobStore:
    return RecordingBlobStore(tmp_path / "blobs")

