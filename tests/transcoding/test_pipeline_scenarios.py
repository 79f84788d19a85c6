"""Tests for the transcoding pipeline orchestrator.

Covers the end-to-end run for a known video, each fatal failure path,
the best-effort thumbnail, the job timeout and staging cleanup.
"""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from conftest import (
    FakeRecordStore,
    FakeTranscoder,
    RecordingBlobStore,
    make_pipeline,
    staging_entries,
)
from hls_transcoder.modules.transcoding.service import (
    PipelineStage,
    TranscodePipeline,
    get_pipeline,
    reset_pipeline,
)
from hls_transcoder.modules.video.models import VideoStatus

RAW_KEY = "uploads/abc123.mp4"


def seeded(tmp_path: Path, **kwargs) -> RecordingBlobStore:
    store = RecordingBlobStore(tmp_path / "blobs", **kwargs)
    store.put("raw_uploads", RAW_KEY, b"source-bytes")
    return store


class TestSuccessfulRun:
    """A run with every collaborator healthy."""

    @pytest.mark.asyncio
    async def test_abc123_publishes_all_artifacts(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(tmp_path, record_store=records, blob_store=blobs)

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.READY
        assert result.hls_path == "abc123/playlist.m3u8"
        assert result.thumbnail_path == "abc123.png"

        assert blobs.has("hls", "abc123/playlist.m3u8")
        for rendition in ("720p", "480p", "240p"):
            assert blobs.has("hls", f"abc123/{rendition}/segment000.ts")
            assert blobs.has("hls", f"abc123/{rendition}/index.m3u8")
        assert blobs.has("thumbnails", "abc123.png")

        assert records.updates == [
            ("abc123", VideoStatus.READY, "abc123/playlist.m3u8", "abc123.png")
        ]

    @pytest.mark.asyncio
    async def test_uploads_carry_content_types(self, tmp_path: Path) -> None:
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(
            tmp_path, record_store=FakeRecordStore({"abc123": RAW_KEY}), blob_store=blobs
        )

        await pipeline.run("abc123")

        content_types = {key: ctype for _, key, ctype in blobs.uploads}
        assert content_types["abc123/playlist.m3u8"] == "application/vnd.apple.mpegurl"
        assert content_types["abc123/720p/segment000.ts"] == "video/MP2T"
        assert content_types["abc123.png"] == "image/png"

    @pytest.mark.asyncio
    async def test_source_downloaded_from_raw_bucket(self, tmp_path: Path) -> None:
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(
            tmp_path, record_store=FakeRecordStore({"abc123": RAW_KEY}), blob_store=blobs
        )

        await pipeline.run("abc123")

        assert ("download", "raw_uploads", RAW_KEY) in blobs.calls

    @pytest.mark.asyncio
    async def test_staging_removed_after_success(self, tmp_path: Path) -> None:
        pipeline = make_pipeline(
            tmp_path,
            record_store=FakeRecordStore({"abc123": RAW_KEY}),
            blob_store=seeded(tmp_path),
        )

        await pipeline.run("abc123")

        assert staging_entries(tmp_path) == []


class TestFatalFailures:
    """Failures that end the run in the failed status."""

    @pytest.mark.asyncio
    async def test_unknown_video_makes_no_blob_calls(self, tmp_path: Path) -> None:
        records = FakeRecordStore({})
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(tmp_path, record_store=records, blob_store=blobs)

        result = await pipeline.run("missing")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.FETCHING
        assert blobs.calls == []
        assert records.updates == [("missing", VideoStatus.FAILED, None, None)]
        assert staging_entries(tmp_path) == []

    @pytest.mark.asyncio
    async def test_download_failure_skips_encoder(self, tmp_path: Path) -> None:
        # Row exists but the raw object was never uploaded
        records = FakeRecordStore({"abc123": RAW_KEY})
        transcoder = FakeTranscoder()
        pipeline = make_pipeline(
            tmp_path,
            record_store=records,
            blob_store=RecordingBlobStore(tmp_path / "blobs"),
            transcoder=transcoder,
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.DOWNLOADING
        assert transcoder.calls == []
        assert records.updates == [("abc123", VideoStatus.FAILED, None, None)]

    @pytest.mark.asyncio
    async def test_transcode_failure_marks_failed(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(
            tmp_path,
            record_store=records,
            blob_store=blobs,
            transcoder=FakeTranscoder(fail_transcode=True),
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.TRANSCODING
        assert not [c for c in blobs.calls if c[0] == "upload"]
        assert staging_entries(tmp_path) == []

    @pytest.mark.asyncio
    async def test_missing_master_playlist_marks_failed(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        pipeline = make_pipeline(
            tmp_path,
            record_store=records,
            blob_store=seeded(tmp_path),
            transcoder=FakeTranscoder(skip_master=True),
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.UPLOADING

    @pytest.mark.asyncio
    async def test_segment_upload_failure_marks_failed(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(
            tmp_path,
            fail_upload=lambda bucket, key: key == "abc123/480p/segment001.ts",
        )
        pipeline = make_pipeline(tmp_path, record_store=records, blob_store=blobs)

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.UPLOADING
        assert "abc123/480p/segment001.ts" in result.error_message
        assert records.updates == [("abc123", VideoStatus.FAILED, None, None)]
        assert staging_entries(tmp_path) == []

    @pytest.mark.asyncio
    async def test_master_upload_failure_marks_failed(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(
            tmp_path,
            fail_upload=lambda bucket, key: key.endswith("playlist.m3u8"),
        )
        pipeline = make_pipeline(tmp_path, record_store=records, blob_store=blobs)

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED

    @pytest.mark.asyncio
    async def test_other_uploads_finish_despite_failure(self, tmp_path: Path) -> None:
        blobs = seeded(
            tmp_path,
            fail_upload=lambda bucket, key: key == "abc123/720p/segment000.ts",
        )
        pipeline = make_pipeline(
            tmp_path, record_store=FakeRecordStore({"abc123": RAW_KEY}), blob_store=blobs
        )

        await pipeline.run("abc123")

        assert blobs.has("hls", "abc123/240p/segment001.ts")

    @pytest.mark.asyncio
    async def test_failed_status_write_error_is_contained(self, tmp_path: Path) -> None:
        records = FakeRecordStore({}, fail_updates=True)
        pipeline = make_pipeline(tmp_path, record_store=records)

        result = await pipeline.run("missing")

        assert result.status == VideoStatus.FAILED
        assert len(records.updates) == 1

    @pytest.mark.asyncio
    async def test_ready_write_error_falls_back_to_failed(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY}, fail_updates=True)
        pipeline = make_pipeline(
            tmp_path, record_store=records, blob_store=seeded(tmp_path)
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.FINALIZING
        assert [u[1] for u in records.updates] == [VideoStatus.READY, VideoStatus.FAILED]


class TestBestEffortThumbnail:
    """Thumbnail problems never block the ready status."""

    @pytest.mark.asyncio
    async def test_thumbnail_extraction_failure_still_ready(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(tmp_path)
        pipeline = make_pipeline(
            tmp_path,
            record_store=records,
            blob_store=blobs,
            transcoder=FakeTranscoder(fail_thumbnail=True),
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.READY
        assert result.thumbnail_path is None
        assert records.updates == [
            ("abc123", VideoStatus.READY, "abc123/playlist.m3u8", None)
        ]
        assert not blobs.has("thumbnails", "abc123.png")

    @pytest.mark.asyncio
    async def test_thumbnail_upload_failure_still_ready(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(tmp_path, fail_upload=lambda bucket, key: bucket == "thumbnails")
        pipeline = make_pipeline(tmp_path, record_store=records, blob_store=blobs)

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.READY
        assert records.updates == [
            ("abc123", VideoStatus.READY, "abc123/playlist.m3u8", None)
        ]


class TestJobTimeout:
    """The whole run is bounded by the job timeout."""

    @pytest.mark.asyncio
    async def test_timeout_marks_failed_and_cancels_encoder(self, tmp_path: Path) -> None:
        records = FakeRecordStore({"abc123": RAW_KEY})
        transcoder = FakeTranscoder(transcode_delay=30.0)
        pipeline = make_pipeline(
            tmp_path,
            record_store=records,
            blob_store=seeded(tmp_path),
            transcoder=transcoder,
            job_timeout=0.2,
        )

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.TRANSCODING
        assert "timeout" in result.error_message
        assert transcoder.cancelled
        assert records.updates == [("abc123", VideoStatus.FAILED, None, None)]
        assert staging_entries(tmp_path) == []


class TestStagingAlwaysRemoved:
    """After any run the job's staging tree no longer exists."""

    @given(
        known=st.booleans(),
        seed_raw=st.booleans(),
        fail_thumbnail=st.booleans(),
        fail_transcode=st.booleans(),
        fail_segment_upload=st.booleans(),
    )
    @settings(max_examples=30, deadline=None)
    @pytest.mark.asyncio
    async def test_staging_absent_after_any_run(
        self,
        known: bool,
        seed_raw: bool,
        fail_thumbnail: bool,
        fail_transcode: bool,
        fail_segment_upload: bool,
    ) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp_path = Path(tmp)
            blobs = RecordingBlobStore(
                tmp_path / "blobs",
                fail_upload=(lambda b, k: k.endswith(".ts")) if fail_segment_upload else None,
            )
            if seed_raw:
                blobs.put("raw_uploads", RAW_KEY, b"source-bytes")
            records = FakeRecordStore({"abc123": RAW_KEY} if known else {})
            pipeline = make_pipeline(
                tmp_path,
                record_store=records,
                blob_store=blobs,
                transcoder=FakeTranscoder(
                    fail_thumbnail=fail_thumbnail, fail_transcode=fail_transcode
                ),
            )

            result = await pipeline.run("abc123")

            assert staging_entries(tmp_path) == []
            expected_ready = known and seed_raw and not fail_transcode and not fail_segment_upload
            assert result.succeeded == expected_ready
            assert len(records.updates) == 1
            assert records.updates[0][1] == result.status


class TestPipelineSetup:
    """Staging creation and the process-wide instance."""

    @pytest.mark.asyncio
    async def test_staging_failure_reported_as_preparing(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        records = FakeRecordStore({"abc123": RAW_KEY})
        blobs = seeded(tmp_path)
        transcoder = FakeTranscoder()
        pipeline = make_pipeline(
            tmp_path, record_store=records, blob_store=blobs, transcoder=transcoder
        )
        pipeline.config.staging_root = str(blocker / "nested")

        result = await pipeline.run("abc123")

        assert result.status == VideoStatus.FAILED
        assert result.failed_stage == PipelineStage.PREPARING
        assert blobs.calls == []
        assert transcoder.calls == []
        assert records.updates == [("abc123", VideoStatus.FAILED, None, None)]

    def test_get_pipeline_is_cached_until_reset(self) -> None:
        reset_pipeline()
        try:
            first = get_pipeline()

            assert isinstance(first, TranscodePipeline)
            assert get_pipeline() is first

            reset_pipeline()

            assert get_pipeline() is not first
        finally:
            reset_pipeline()
