"""
Timecode parsing, formatting and manual cut point validation.
"""

from __future__ import annotations

import math
import re
from typing import List, NamedTuple, Optional, Union

from .errors import ValidationError

_TIMECODE_RE = re.compile(r"^(\d+):(\d+):(\d+)$")
_OFFSET_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)s?$")


class Cutpoint(NamedTuple):
    """A validated manual cut point.

    ``text`` is what the user typed, ``seconds`` its absolute position.
    """

    text: str
    seconds: int


def parse_timecode(text: str) -> Optional[int]:
    """Parse ``HH:MM:SS`` into whole seconds, or ``None`` if malformed."""
    match = _TIMECODE_RE.match((text or "").strip())
    if not match:
        return None
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def parse_offset(value: Union[str, float, int, None]) -> float:
    """Parse a recogniser time offset.

    The recogniser reports offsets as ``"12.340s"``; older payloads and our
    own fixtures may carry plain numbers or ``HH:MM:SS``.  Missing or
    unparseable values count as zero.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    value = value.strip()
    if ":" in value:
        parsed = parse_timecode(value)
        return float(parsed) if parsed is not None else 0.0
    match = _OFFSET_RE.match(value)
    return float(match.group(1)) if match else 0.0


def format_timestamp(seconds: float) -> str:
    """Format absolute seconds as ``[MM:SS]``; minutes never roll into hours."""
    total = max(0.0, seconds)
    minutes = int(total // 60)
    secs = int(math.floor(total % 60))
    return f"[{minutes:02d}:{secs:02d}]"


def format_duration(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS`` for user facing messages."""
    total = int(max(0.0, seconds))
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


def validate_cutpoints(text: str, total_duration: float, max_segment: float) -> List[Cutpoint]:
    """Validate a newline separated list of ``HH:MM:SS`` cut points.

    Rules are applied line by line in order, the previous cut defaulting to
    zero: format, strictly increasing, inside the recording, and no gap
    longer than ``max_segment``.  The tail from the last cut to the end of
    the recording must also fit.

    Args:
        text: Raw user input.  Blank lines are ignored.
        total_duration: Measured duration of the recording in seconds.
        max_segment: Longest segment the recogniser accepts, in seconds.

    Returns:
        The cut points in input order.

    Raises:
        ValidationError: Describing the first offending line.
    """
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    if not lines:
        raise ValidationError("Please send at least one timecode (HH:MM:SS).", kind="empty")

    cutpoints: List[Cutpoint] = []
    previous = 0
    for line in lines:
        seconds = parse_timecode(line)
        if seconds is None:
            raise ValidationError(
                f'Invalid format: "{line}". Please use HH:MM:SS (e.g., 00:15:30).',
                line=line,
                kind="format",
            )
        if seconds <= previous:
            raise ValidationError(
                f'Invalid order: "{line}" must be later than previous split.',
                line=line,
                kind="order",
            )
        if seconds >= total_duration:
            raise ValidationError(
                f'Timecode "{line}" is beyond file duration ({format_duration(total_duration)}).',
                line=line,
                kind="range",
            )
        if seconds - previous > max_segment:
            raise ValidationError(
                f'Segment too long! Gap before "{line}" is > {_minutes(max_segment)} mins. '
                "Please add an intermediate split.",
                line=line,
                kind="segment_too_long",
            )
        cutpoints.append(Cutpoint(line, seconds))
        previous = seconds

    if total_duration - previous > max_segment:
        raise ValidationError(
            f'Final segment too long! Gap from "{lines[-1]}" to end is > {_minutes(max_segment)} mins.',
            line=lines[-1],
            kind="final_too_long",
        )
    return cutpoints


def _minutes(seconds: float) -> str:
    return f"{seconds / 60:g}"
