"""FFmpeg encoder adapter.

Runs ffmpeg and ffprobe as asyncio subprocesses for thumbnail extraction
and multi-rendition HLS transcoding. Exit status and stderr are surfaced
through EncodeError; a cancelled or timed-out invocation kills the child
process before the error propagates.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

from hls_transcoder.core.logging import log_info, log_warning
from hls_transcoder.core.metrics import ENCODER_INVOCATIONS_TOTAL
from hls_transcoder.modules.transcoding.abr import (
    MASTER_PLAYLIST_NAME,
    SEGMENT_FILENAME_PATTERN,
    VARIANT_PLAYLIST_NAME,
    ABRLadder,
    build_filter_complex,
    build_var_stream_map,
    format_bitrate,
    get_ffmpeg_args_for_abr_variant,
)

logger = logging.getLogger(__name__)

THUMBNAIL_FILENAME = "thumbnail.png"

# Keep the tail of stderr; ffmpeg can be verbose on bad input
STDERR_LIMIT = 4000


class EncodeError(Exception):
    """Raised when the encoder fails or does not produce its output."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class EncoderTimeoutError(EncodeError):
    """Raised when an encoder invocation exceeds its timeout."""
    pass


@dataclass
class EncodeResult:
    """Result of a successful encoder invocation."""
    output_path: str
    returncode: int
    duration: float
    stderr: str = ""
    variants: list[str] = field(default_factory=list)


def parse_size(size: str) -> tuple[int, int]:
    """Parse a WIDTHxHEIGHT size string."""
    try:
        width, height = (int(part) for part in size.lower().split("x"))
    except ValueError as e:
        raise ValueError(f"Invalid size {size!r}, expected WIDTHxHEIGHT") from e
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid size {size!r}, dimensions must be positive")
    return width, height


def has_audio_stream(info: dict) -> bool:
    """Check ffprobe output for an audio stream."""
    return any(
        stream.get("codec_type") == "audio"
        for stream in info.get("streams", [])
    )


async def _kill_process(process: asyncio.subprocess.Process) -> None:
    """Kill a running child process and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class FFmpegTranscoder:
    """FFmpeg-based HLS transcoder."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        probe_timeout: Optional[float] = 30.0,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            probe_timeout: Seconds allowed for a probe, None for no limit
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout

    async def _run(
        self,
        cmd: list[str],
        operation: str,
        timeout: Optional[float] = None,
    ) -> tuple[int, bytes, str]:
        """Run a command and wait for it to exit.

        Returns:
            Tuple of (returncode, stdout, stderr text)
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            ENCODER_INVOCATIONS_TOTAL.labels(operation=operation, status="failure").inc()
            raise EncodeError(f"Failed to start {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill_process(process)
            ENCODER_INVOCATIONS_TOTAL.labels(operation=operation, status="timeout").inc()
            raise EncoderTimeoutError(
                f"{operation} exceeded timeout of {timeout}s",
                returncode=process.returncode,
            )
        except asyncio.CancelledError:
            await _kill_process(process)
            ENCODER_INVOCATIONS_TOTAL.labels(operation=operation, status="cancelled").inc()
            raise

        stderr_text = stderr.decode("utf-8", errors="replace")[-STDERR_LIMIT:]
        status = "success" if process.returncode == 0 else "failure"
        ENCODER_INVOCATIONS_TOTAL.labels(operation=operation, status=status).inc()
        return process.returncode, stdout, stderr_text

    async def probe(self, input_path: str) -> dict:
        """Get stream information using ffprobe.

        Args:
            input_path: Path to input video

        Returns:
            Parsed ffprobe JSON

        Raises:
            EncodeError: ffprobe failed or printed invalid JSON
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]
        returncode, stdout, stderr = await self._run(cmd, "probe", self.probe_timeout)
        if returncode != 0:
            raise EncodeError(
                f"ffprobe exited with code {returncode}",
                returncode=returncode,
                stderr=stderr,
            )
        try:
            return json.loads(stdout)
        except ValueError as e:
            raise EncodeError(f"ffprobe returned invalid JSON: {e}", returncode=returncode) from e

    def build_thumbnail_command(
        self,
        input_path: str,
        output_path: str,
        timestamp: str = "00:00:02",
        size: str = "640x360",
    ) -> list[str]:
        """Build FFmpeg command for a single-frame thumbnail.

        Seeks before the input so only one frame is decoded.
        """
        width, height = parse_size(size)
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-ss", timestamp,
            "-i", input_path,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}",
            output_path,
        ]

    def build_abr_command(
        self,
        input_path: str,
        output_dir: str,
        ladder: ABRLadder,
        with_audio: bool = True,
    ) -> list[str]:
        """Build FFmpeg command for multi-rendition HLS output.

        Each rendition is written to output_dir/<name>/ and the master
        playlist to output_dir itself.

        Args:
            input_path: Path to input video
            output_dir: HLS output directory
            ladder: ABR ladder
            with_audio: Map the first audio stream into every rendition

        Returns:
            FFmpeg command as list of arguments
        """
        segment = ladder.segment_duration
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", input_path,
            "-filter_complex", build_filter_complex(ladder),
        ]

        for index, variant in enumerate(ladder.variants):
            cmd.extend(get_ffmpeg_args_for_abr_variant(index, variant))

        cmd.extend([
            "-preset", ladder.preset,
            # 4:2:0 chroma keeps the ladder decodable by every HLS player
            "-pix_fmt", "yuv420p",
            # Keyframe on every segment boundary
            "-force_key_frames", f"expr:gte(t,n_forced*{segment})",
            "-sc_threshold", "0",
        ])

        if with_audio:
            for _ in ladder.variants:
                cmd.extend(["-map", "0:a:0"])
            cmd.extend([
                "-c:a", "aac",
                "-b:a", format_bitrate(ladder.audio_bitrate),
                "-ac", "2",
            ])

        cmd.extend([
            "-f", "hls",
            "-hls_time", str(segment),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
            "-hls_segment_filename", os.path.join(output_dir, "%v", SEGMENT_FILENAME_PATTERN),
            "-master_pl_name", MASTER_PLAYLIST_NAME,
            "-var_stream_map", build_var_stream_map(ladder, with_audio),
            os.path.join(output_dir, "%v", VARIANT_PLAYLIST_NAME),
        ])
        return cmd

    async def extract_thumbnail(
        self,
        input_path: str,
        output_dir: str,
        timestamp: str = "00:00:02",
        size: str = "640x360",
        timeout: Optional[float] = None,
    ) -> EncodeResult:
        """Extract one frame as output_dir/thumbnail.png.

        Raises:
            EncodeError: Non-zero exit, or no file written (e.g. the source
                is shorter than the timestamp)
        """
        output_path = os.path.join(output_dir, THUMBNAIL_FILENAME)
        cmd = self.build_thumbnail_command(input_path, output_path, timestamp, size)

        start = time.perf_counter()
        returncode, _, stderr = await self._run(cmd, "thumbnail", timeout)
        if returncode != 0:
            raise EncodeError(
                f"Thumbnail extraction exited with code {returncode}",
                returncode=returncode,
                stderr=stderr,
            )
        if not os.path.isfile(output_path):
            raise EncodeError(
                f"Thumbnail extraction produced no frame at {timestamp}",
                returncode=returncode,
                stderr=stderr,
            )

        return EncodeResult(
            output_path=output_path,
            returncode=returncode,
            duration=time.perf_counter() - start,
            stderr=stderr,
        )

    async def transcode_to_abr(
        self,
        input_path: str,
        output_dir: str,
        ladder: ABRLadder,
        timeout: Optional[float] = None,
    ) -> EncodeResult:
        """Transcode to every rendition of the ladder in one invocation.

        Audio is omitted when the source has no audio stream. A failed
        probe is treated as audio present.

        Raises:
            EncodeError: Non-zero exit or master playlist not written
        """
        try:
            with_audio = has_audio_stream(await self.probe(input_path))
        except EncodeError as e:
            log_warning(logger, "Probe failed, assuming audio is present", error=str(e))
            with_audio = True

        cmd = self.build_abr_command(input_path, output_dir, ladder, with_audio)
        log_info(
            logger,
            "Starting ABR transcode",
            renditions=ladder.names,
            with_audio=with_audio,
        )

        start = time.perf_counter()
        returncode, _, stderr = await self._run(cmd, "transcode", timeout)
        if returncode != 0:
            raise EncodeError(
                f"Transcode exited with code {returncode}: {stderr.strip()[-500:]}",
                returncode=returncode,
                stderr=stderr,
            )

        master_path = os.path.join(output_dir, MASTER_PLAYLIST_NAME)
        if not os.path.isfile(master_path):
            raise EncodeError(
                "Transcode finished without writing the master playlist",
                returncode=returncode,
                stderr=stderr,
            )

        return EncodeResult(
            output_path=master_path,
            returncode=returncode,
            duration=time.perf_counter() - start,
            stderr=stderr,
            variants=ladder.names,
        )
