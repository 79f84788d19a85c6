"""Adaptive Bitrate (ABR) ladder configuration and FFmpeg argument helpers.

A ladder is the ordered set of renditions produced by a single encoder
invocation, plus the HLS packaging parameters shared by all of them.
"""

from dataclasses import dataclass, field

from hls_transcoder.core.config import settings

MASTER_PLAYLIST_NAME = "playlist.m3u8"
VARIANT_PLAYLIST_NAME = "index.m3u8"
SEGMENT_FILENAME_PATTERN = "segment%03d.ts"


@dataclass(frozen=True)
class ABRVariant:
    """A single rendition in an ABR ladder.

    Width is derived from the source aspect ratio and rounded to an even
    number, so only the height is fixed.
    """
    name: str
    height: int
    bitrate: int  # bps
    max_bitrate: int  # bps
    buffer_size: int  # bps


@dataclass
class ABRLadder:
    """Complete ABR ladder configuration."""
    variants: list[ABRVariant] = field(default_factory=list)
    segment_duration: int = 10  # seconds
    audio_bitrate: int = 128000  # bps
    preset: str = "veryfast"

    @property
    def names(self) -> list[str]:
        return [variant.name for variant in self.variants]

    @classmethod
    def create_vod_ladder(
        cls,
        segment_duration: int = 10,
        audio_bitrate: int = 128000,
        preset: str = "veryfast",
    ) -> "ABRLadder":
        """Create the standard VOD ladder: 720p, 480p and 240p."""
        return cls(
            variants=[
                ABRVariant(
                    name="720p",
                    height=720,
                    bitrate=2000000,
                    max_bitrate=2140000,
                    buffer_size=4000000,
                ),
                ABRVariant(
                    name="480p",
                    height=480,
                    bitrate=800000,
                    max_bitrate=856000,
                    buffer_size=1600000,
                ),
                ABRVariant(
                    name="240p",
                    height=240,
                    bitrate=400000,
                    max_bitrate=428000,
                    buffer_size=800000,
                ),
            ],
            segment_duration=segment_duration,
            audio_bitrate=audio_bitrate,
            preset=preset,
        )

    @classmethod
    def from_settings(cls) -> "ABRLadder":
        """Create the VOD ladder with packaging parameters from settings.

        Raises:
            ValueError: If the configured parameters make an invalid ladder
        """
        ladder = cls.create_vod_ladder(
            segment_duration=settings.HLS_SEGMENT_SECONDS,
            audio_bitrate=settings.AUDIO_BITRATE,
            preset=settings.VIDEO_PRESET,
        )
        is_valid, errors = validate_abr_config(ladder)
        if not is_valid:
            raise ValueError(f"Invalid ABR ladder settings: {'; '.join(errors)}")
        return ladder


def format_bitrate(bps: int) -> str:
    """Format a bitrate in bps as an FFmpeg kilobit value, e.g. 2000k."""
    return f"{bps // 1000}k"


def build_filter_complex(ladder: ABRLadder) -> str:
    """Split the source video once and scale each branch to its rendition height.

    Produces labelled outputs [v0out], [v1out], ... in ladder order.
    """
    count = len(ladder.variants)
    split_labels = "".join(f"[v{i}]" for i in range(count))
    chains = [f"[0:v]split={count}{split_labels}"]
    for i, variant in enumerate(ladder.variants):
        chains.append(f"[v{i}]scale=-2:{variant.height}[v{i}out]")
    return ";".join(chains)


def get_ffmpeg_args_for_abr_variant(index: int, variant: ABRVariant) -> list[str]:
    """Get per-stream FFmpeg arguments for an ABR variant.

    Args:
        index: Position of the variant in the ladder
        variant: ABR variant configuration

    Returns:
        List of FFmpeg arguments
    """
    return [
        "-map", f"[v{index}out]",
        f"-c:v:{index}", "libx264",
        f"-b:v:{index}", format_bitrate(variant.bitrate),
        f"-maxrate:v:{index}", format_bitrate(variant.max_bitrate),
        f"-bufsize:v:{index}", format_bitrate(variant.buffer_size),
    ]


def build_var_stream_map(ladder: ABRLadder, with_audio: bool = True) -> str:
    """Build the -var_stream_map value naming each rendition.

    The names become the per-rendition output directories and the
    variant URIs in the master playlist.
    """
    entries = []
    for i, variant in enumerate(ladder.variants):
        if with_audio:
            entries.append(f"v:{i},a:{i},name:{variant.name}")
        else:
            entries.append(f"v:{i},name:{variant.name}")
    return " ".join(entries)


def validate_abr_config(ladder: ABRLadder) -> tuple[bool, list[str]]:
    """Validate ABR ladder configuration.

    Args:
        ladder: ABR ladder to validate

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []

    if not ladder.variants:
        errors.append("ABR ladder must have at least one variant")

    if ladder.segment_duration < 1:
        errors.append("Segment duration must be at least 1 second")

    if ladder.audio_bitrate <= 0:
        errors.append("Audio bitrate must be positive")

    names = ladder.names
    if len(set(names)) != len(names):
        errors.append("Variant names must be unique")

    # Highest rendition first
    prev_bitrate = None
    for variant in ladder.variants:
        if not variant.name or "/" in variant.name:
            errors.append(f"Invalid variant name: {variant.name!r}")
        if variant.height <= 0 or variant.height % 2:
            errors.append(f"Height must be a positive even number for {variant.name}")
        if prev_bitrate is not None and variant.bitrate >= prev_bitrate:
            errors.append("Variants must be ordered by decreasing bitrate")
        prev_bitrate = variant.bitrate

        if variant.max_bitrate < variant.bitrate:
            errors.append(f"Max bitrate must be >= bitrate for {variant.name}")

    return len(errors) == 0, errors
