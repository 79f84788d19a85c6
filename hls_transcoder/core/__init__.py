"""Core module for configuration and cross-cutting utilities."""

from hls_transcoder.core.config import settings
from hls_transcoder.core.database import Base, get_session_maker

__all__ = [
    "settings",
    "Base",
    "get_session_maker",
]
