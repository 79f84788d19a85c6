"""Video record module."""

from hls_transcoder.modules.video.models import Video, VideoStatus
from hls_transcoder.modules.video.repository import (
    JobMetadata,
    RecordStore,
    StoreError,
    VideoNotFoundError,
    VideoRepository,
)

__all__ = [
    # Models
    "Video",
    "VideoStatus",
    # Repository
    "VideoRepository",
    "RecordStore",
    "JobMetadata",
    "StoreError",
    "VideoNotFoundError",
]
