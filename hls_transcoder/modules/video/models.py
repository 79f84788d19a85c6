"""Video record model.

Maps the videos table shared with the upload service. Rows are created
upstream with status pending; this service only reads raw_path and writes
the terminal status with the published artifact paths.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from hls_transcoder.core.database import Base


class VideoStatus(str, Enum):
    """Processing status of a video."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class Video(Base):
    """Row in the videos table."""

    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    raw_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=VideoStatus.PENDING.value
    )
    hls_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    thumbnail_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    def __repr__(self) -> str:
        return f"<Video(id={self.id}, status={self.status})>"
