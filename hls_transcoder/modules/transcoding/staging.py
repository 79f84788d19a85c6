"""Job-scoped local staging areas.

Each run gets a private directory tree under the staging root, named after
the job id plus a unique suffix so concurrent runs never share a path.
"""

import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator

from hls_transcoder.core.logging import log_error
from hls_transcoder.modules.transcoding.ffmpeg import THUMBNAIL_FILENAME

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
MAX_PREFIX_LENGTH = 64


class StagingError(Exception):
    """Raised when a staging area cannot be created."""
    pass


@dataclass(frozen=True)
class StagingArea:
    """Directory layout of one job's staging tree."""
    root: Path
    raw_dir: Path
    hls_dir: Path
    thumbnail_dir: Path

    def source_path(self, raw_path: str) -> Path:
        """Local path for the downloaded source, named after the key's basename."""
        name = PurePosixPath(raw_path).name
        # A key ending in "/" names a prefix, not an object
        if raw_path.endswith("/") or name in ("", ".", ".."):
            name = "source"
        return self.raw_dir / name

    @property
    def thumbnail_path(self) -> Path:
        return self.thumbnail_dir / THUMBNAIL_FILENAME


def sanitize_job_id(job_id: str) -> str:
    """Make a job id safe for use as a directory name prefix."""
    return _UNSAFE_CHARS.sub("_", job_id)[:MAX_PREFIX_LENGTH] or "job"


def remove_tree(path: Path) -> None:
    """Delete a staging tree. Failures are logged, not raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log_error(logger, "Failed to remove staging area", e, path=str(path))


@contextmanager
def staging_area(
    job_id: str,
    root: str,
    rendition_names: Iterable[str] = (),
) -> Iterator[StagingArea]:
    """Create a staging tree for a job and remove it when the block exits.

    Layout: raw/, hls/ with one sub-directory per rendition, thumbnail/.
    Removal runs on every exit path, including cancellation.

    Raises:
        StagingError: The tree could not be created
    """
    base = Path(root)
    try:
        base.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"{sanitize_job_id(job_id)}-", dir=base))
    except OSError as e:
        raise StagingError(f"Failed to create staging area under {root}: {e}") from e

    try:
        area = StagingArea(
            root=path,
            raw_dir=path / "raw",
            hls_dir=path / "hls",
            thumbnail_dir=path / "thumbnail",
        )
        try:
            area.raw_dir.mkdir()
            area.thumbnail_dir.mkdir()
            area.hls_dir.mkdir()
            for name in rendition_names:
                (area.hls_dir / name).mkdir()
        except OSError as e:
            raise StagingError(f"Failed to lay out staging area {path}: {e}") from e
        yield area
    finally:
        remove_tree(path)
