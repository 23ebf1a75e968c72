"""
Audio conversion and splitting utilities.

Duration probing goes through `pydub`, which delegates to `ffprobe`.
Conversion and splitting drive `ffmpeg` directly because pydub would decode
the whole recording into memory and cannot stream-copy.

Split parts are named ``<stem>_part_000<ext>``, ``<stem>_part_001<ext>`` and
so on, so sorting the file names lexically yields segment order.  Every
later step relies on that.
"""

from __future__ import annotations

import logging
import os
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from pydub.utils import mediainfo

from .errors import SplitError
from .planner import MODE_EXPLICIT, MODE_INTERVAL, SplitPlan

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SUPPORTED_EXTENSIONS = {".mp3", ".m4a", ".flac", ".wav", ".mp4", ".ogg", ".oga", ".webm", ".mov"}
STREAM_COPY = "copy"


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG_BIN", "ffmpeg")


def is_supported_audio(path: PathLike) -> bool:
    """Check whether the file at ``path`` has a supported media extension."""
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def build_convert_command(input_path: PathLike, output_path: PathLike, *, bitrate: str = "320k") -> List[str]:
    """Build the ffmpeg command that extracts the audio track as MP3."""
    return [
        ffmpeg_bin(), "-y", "-i", str(input_path), "-vn",
        "-c:a", "libmp3lame", "-b:a", bitrate, str(output_path),
    ]


def convert_to_mp3(input_path: PathLike, output_path: PathLike, *, bitrate: str = "320k") -> Path:
    """Extract the audio track of ``input_path`` into an MP3 file.

    Voice notes arrive as OGG/Opus and videos as MP4; the recogniser and
    the splitter both get a uniform MP3 instead.  ffmpeg streams the
    conversion, so memory use does not grow with the recording.

    Args:
        input_path: Source media file.
        output_path: Destination ``.mp3`` path.  Parent folders are created.
        bitrate: Target bitrate passed to the encoder.

    Returns:
        ``output_path`` as a :class:`Path`.  The caller owns the file.

    Raises:
        SplitError: If ffmpeg is missing or fails.  Partial output is removed.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_convert_command(input_path, output_path, bitrate=bitrate)
    logger.info("Converting %s to %s", input_path, output_path)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as exc:
        raise SplitError(f"Could not run ffmpeg: {exc}") from exc
    if proc.returncode != 0:
        cleanup_temp_file(output_path)
        raise SplitError(f"ffmpeg conversion failed: {proc.stderr.strip()[-500:]}")
    return output_path


def probe_duration(path: PathLike) -> float:
    """Return the duration of a media file in seconds.

    Raises:
        SplitError: If ffprobe cannot read a positive duration.
    """
    try:
        info = mediainfo(str(path))
        duration = float(info.get("duration") or 0)
    except (OSError, ValueError) as exc:
        raise SplitError(f"Could not read duration of {path}: {exc}") from exc
    if duration <= 0:
        raise SplitError(f"Could not read duration of {path}")
    return duration


def part_paths(file_path: PathLike) -> List[Path]:
    """Existing split parts of ``file_path`` in segment order."""
    source = Path(file_path)
    prefix = f"{source.stem}_part_"
    return sorted(
        p for p in source.parent.iterdir() if p.name.startswith(prefix) and p.suffix == source.suffix
    )


def build_split_command(
    file_path: PathLike,
    plan: SplitPlan,
    *,
    codec: str = "libmp3lame",
    bitrate: Optional[str] = "320k",
) -> List[str]:
    """Build the ffmpeg segment muxer command for ``plan``."""
    source = Path(file_path)
    pattern = source.with_name(f"{source.stem}_part_%03d{source.suffix}")
    cmd = [ffmpeg_bin(), "-y", "-i", str(source), "-vn", "-f", "segment", "-c:a", codec]
    if codec != STREAM_COPY and bitrate:
        cmd += ["-b:a", bitrate]
    cmd += ["-reset_timestamps", "1"]
    if plan.mode == MODE_EXPLICIT:
        cmd += ["-segment_times", ",".join(_seconds_arg(cut) for cut in plan.cutpoints)]
    elif plan.mode == MODE_INTERVAL:
        cmd += ["-segment_time", _seconds_arg(plan.interval)]
    else:
        raise SplitError(f"Plan mode {plan.mode!r} needs no splitting")
    cmd.append(str(pattern))
    return cmd


def split_audio(
    file_path: PathLike,
    plan: SplitPlan,
    *,
    codec: str = "libmp3lame",
    bitrate: Optional[str] = "320k",
) -> List[Path]:
    """Cut ``file_path`` into the segments described by ``plan``.

    A single-segment plan returns the source itself without running ffmpeg.
    Otherwise the parts are written next to the source.

    Args:
        file_path: Source audio file.
        plan: Split plan from :func:`splitscribe.planner.plan`.
        codec: ``"copy"`` for stream copy, otherwise the audio encoder.
        bitrate: Encoder bitrate, ignored for stream copy.

    Returns:
        Part paths in segment order, one per planned segment.

    Raises:
        SplitError: If ffmpeg is missing or fails, or the number of parts
            does not match the plan.  Partial output is removed first.
    """
    source = Path(file_path)
    if len(plan) == 1:
        return [source]

    for stale in part_paths(source):
        cleanup_temp_file(stale)

    cmd = build_split_command(source, plan, codec=codec, bitrate=bitrate)
    logger.info("Splitting %s into %d parts (%s)", source, len(plan), plan.mode)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as exc:
        raise SplitError(f"Could not run ffmpeg: {exc}") from exc

    if proc.returncode != 0:
        _discard_parts(source)
        raise SplitError(f"ffmpeg segmenting failed: {proc.stderr.strip()[-500:]}")

    parts = part_paths(source)
    if len(parts) != len(plan):
        _discard_parts(source)
        raise SplitError(f"Expected {len(plan)} parts from {source.name}, found {len(parts)}")
    return parts


def _seconds_arg(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _discard_parts(source: Path) -> None:
    for part in part_paths(source):
        cleanup_temp_file(part)


def cleanup_temp_file(path: Optional[PathLike]) -> None:
    """Remove a temporary file if it exists.

    Args:
        path: Path to the temporary file.  Nothing happens if ``path`` is
            ``None`` or the file does not exist.
    """
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning("Could not remove temp file %s: %s", path, exc)


@contextmanager
def temp_files(*paths: Optional[PathLike]) -> Iterator[List[PathLike]]:
    """Delete the given files, and any appended to the yielded list, on exit."""
    tracked: List[PathLike] = [p for p in paths if p]
    try:
        yield tracked
    finally:
        for path in tracked:
            cleanup_temp_file(path)
