"""
Split planning.

Decides where a recording is cut and at which absolute offset each segment
starts.  Planning is pure; the physical cut happens in
:func:`splitscribe.audio_processor.split_audio`, which reads the plan's
``mode``, ``interval`` and ``cutpoints``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional, Sequence, Tuple

from .errors import PlanError

MODE_SINGLE = "single"
MODE_INTERVAL = "interval"
MODE_EXPLICIT = "explicit"


class PlannedSegment(NamedTuple):
    index: int
    start_offset: float


@dataclass(frozen=True)
class SplitPlan:
    """Ordered segment offsets for one job.

    Offsets start at zero and strictly increase.  The plan's length equals
    the number of files the splitter must produce.
    """

    segments: Tuple[PlannedSegment, ...]
    mode: str
    total_duration: float
    interval: Optional[float] = None
    cutpoints: Tuple[float, ...] = ()

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self) -> Iterator[PlannedSegment]:
        return iter(self.segments)

    @property
    def offsets(self) -> Tuple[float, ...]:
        return tuple(seg.start_offset for seg in self.segments)

    def offset_for(self, index: int) -> float:
        return self.segments[index].start_offset


def plan(
    total_duration: float,
    max_segment: float,
    cutpoints: Optional[Sequence[float]] = None,
) -> SplitPlan:
    """Build the split plan for a recording.

    Args:
        total_duration: Length of the recording in seconds.
        max_segment: Recogniser duration ceiling in seconds.
        cutpoints: Validated absolute cut positions in seconds.  When given,
            they replace automatic interval splitting.

    Returns:
        The plan.  Without cut points a recording that fits the ceiling is a
        single segment; a longer one is cut every ``max_segment`` seconds.

    Raises:
        PlanError: If the duration or ceiling is not positive, or a cut point
            would produce an empty segment.
    """
    if total_duration is None or total_duration <= 0:
        raise PlanError(f"Recording duration must be positive, got {total_duration!r}")
    if max_segment <= 0:
        raise PlanError(f"Maximum segment length must be positive, got {max_segment!r}")

    if cutpoints is not None:
        offsets = [0.0]
        for cut in cutpoints:
            cut = float(cut)
            if cut <= offsets[-1] or cut >= total_duration:
                raise PlanError(
                    f"Cut point {cut:g}s would produce an empty segment "
                    f"(previous {offsets[-1]:g}s, duration {total_duration:g}s)"
                )
            offsets.append(cut)
        mode = MODE_EXPLICIT if len(offsets) > 1 else MODE_SINGLE
        return SplitPlan(
            segments=_segments(offsets),
            mode=mode,
            total_duration=total_duration,
            cutpoints=tuple(offsets[1:]),
        )

    if total_duration <= max_segment:
        return SplitPlan(segments=_segments([0.0]), mode=MODE_SINGLE, total_duration=total_duration)

    count = math.ceil(total_duration / max_segment)
    offsets = [i * max_segment for i in range(count)]
    return SplitPlan(
        segments=_segments(offsets),
        mode=MODE_INTERVAL,
        total_duration=total_duration,
        interval=max_segment,
    )


def _segments(offsets: Sequence[float]) -> Tuple[PlannedSegment, ...]:
    return tuple(PlannedSegment(i, offset) for i, offset in enumerate(offsets))
