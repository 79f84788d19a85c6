"""Video repository for database operations.

VideoRepository works on a caller-owned session. RecordStore is the
adapter the pipeline uses: each call opens one short session and commits
its own transaction.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hls_transcoder.core.database import get_session_maker
from hls_transcoder.core.logging import log_warning
from hls_transcoder.modules.video.models import Video, VideoStatus

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the record store cannot be read or written."""
    pass


class VideoNotFoundError(StoreError):
    """Raised when no video row exists for an id."""
    pass


@dataclass(frozen=True)
class JobMetadata:
    """Fields of a video row needed to run a transcode."""
    id: str
    raw_path: str
    status: str


class VideoRepository:
    """Repository for video record reads and status updates."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session."""
        self.session = session

    async def get_by_id(self, video_id: str) -> Optional[Video]:
        """Get video by ID.

        Args:
            video_id: Video ID

        Returns:
            Optional[Video]: Video if found, None otherwise
        """
        result = await self.session.execute(
            select(Video).where(Video.id == video_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        video_id: str,
        status: VideoStatus,
        hls_path: Optional[str] = None,
        thumbnail_path: Optional[str] = None,
    ) -> int:
        """Write a terminal status.

        A ready update writes both path columns, so a missing thumbnail
        clears thumbnail_path. Any other status writes only the status.

        Args:
            video_id: Video ID
            status: New status
            hls_path: Master playlist key (ready only)
            thumbnail_path: Thumbnail key or None (ready only)

        Returns:
            int: Number of rows matched
        """
        values = {"status": status.value}
        if status == VideoStatus.READY:
            values["hls_path"] = hls_path
            values["thumbnail_path"] = thumbnail_path

        result = await self.session.execute(
            update(Video).where(Video.id == video_id).values(**values)
        )
        await self.session.flush()
        return result.rowcount


class RecordStore:
    """Record store adapter used by the transcoding pipeline."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        # Resolved per call; the process-wide factory is rebuilt after dispose_engine
        return self._session_maker or get_session_maker()

    async def get_job(self, video_id: str) -> JobMetadata:
        """Fetch the metadata of a video.

        Raises:
            VideoNotFoundError: No row for the id
            StoreError: Database failure
        """
        try:
            async with self._sessions()() as session:
                video = await VideoRepository(session).get_by_id(video_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read video {video_id}: {e}") from e

        if video is None:
            raise VideoNotFoundError(f"Video not found: {video_id}")

        return JobMetadata(id=video.id, raw_path=video.raw_path, status=video.status)

    async def update_job_status(
        self,
        video_id: str,
        status: VideoStatus,
        hls_path: Optional[str] = None,
        thumbnail_path: Optional[str] = None,
    ) -> bool:
        """Persist a terminal status.

        Returns:
            bool: False if no row matched the id

        Raises:
            StoreError: Database failure
        """
        try:
            async with self._sessions()() as session:
                matched = await VideoRepository(session).update_status(
                    video_id, status, hls_path=hls_path, thumbnail_path=thumbnail_path
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update video {video_id}: {e}") from e

        if matched == 0:
            log_warning(
                logger,
                "Status update matched no video row",
                video_id=video_id,
                status=status.value,
            )
            return False
        return True
