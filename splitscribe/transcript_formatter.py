"""
Transcript formatting utilities.

The recogniser returns a flat list of words with times relative to their own
segment.  The functions in this module turn those words into readable lines
stamped with absolute ``[MM:SS]`` times and stitch segments back together.

Line breaks come from a punctuation/silence heuristic:

* If the recogniser produced any sentence punctuation in the segment, only a
  silence longer than 5 seconds forces a break (a paragraph pause).
  Without punctuation silence is the only signal, so any gap longer than
  1 second breaks the line.
* A line is also closed after a sentence end (``.``, ``!``, ``?``), after a
  comma once the line is past 100 characters, once it passes 150
  characters, and at the last word of the segment.

Everything here is pure so the heuristic can be tested with synthetic words.
"""

from __future__ import annotations

import re
from typing import Iterable, List, NamedTuple, Optional, Sequence

from .planner import SplitPlan
from .stt_service import WordToken
from .timecodes import format_timestamp

PARAGRAPH_GAP = 5.0
SILENCE_GAP = 1.0
COMMA_BREAK_CHARS = 100
MAX_LINE_CHARS = 150

_PUNCTUATION_RE = re.compile(r"[.!?]")
_SENTENCE_END_RE = re.compile(r"[.!?]$")


class TranscriptLine(NamedTuple):
    start: float
    text: str


def has_punctuation(words: Iterable[WordToken]) -> bool:
    """Whether any word carries sentence punctuation."""
    return any(_PUNCTUATION_RE.search(w.text) for w in words)


def segment_lines(
    words: Sequence[WordToken],
    offset: float = 0.0,
    punctuated: Optional[bool] = None,
) -> List[TranscriptLine]:
    """Group one segment's words into transcript lines.

    Args:
        words: Words of a single segment, times relative to that segment.
        offset: Absolute start of the segment in the recording.
        punctuated: Whether the recogniser punctuated this segment.
            Computed from ``words`` when omitted.

    Returns:
        Lines with absolute start times, in spoken order.
    """
    if punctuated is None:
        punctuated = has_punctuation(words)
    silence_limit = PARAGRAPH_GAP if punctuated else SILENCE_GAP

    lines: List[TranscriptLine] = []
    buffer = ""
    line_start = 0.0
    last_end = 0.0

    for index, word in enumerate(words):
        gap = word.start - last_end
        if not buffer:
            line_start = word.start

        if index > 0 and gap > silence_limit and buffer:
            lines.append(TranscriptLine(offset + line_start, buffer.strip()))
            buffer = ""
            line_start = word.start

        buffer += f"{word.text} "
        last_end = word.end

        sentence_end = bool(_SENTENCE_END_RE.search(word.text))
        comma_break = word.text.endswith(",") and len(buffer) > COMMA_BREAK_CHARS
        too_long = len(buffer) > MAX_LINE_CHARS
        if sentence_end or comma_break or too_long or index == len(words) - 1:
            lines.append(TranscriptLine(offset + line_start, buffer.strip()))
            buffer = ""

    return lines


def format_line(line: TranscriptLine) -> str:
    return f"{format_timestamp(line.start)} {line.text}"


def error_placeholder(offset: float) -> str:
    """Gap marker for a segment that could not be transcribed."""
    return f"[Error part: {format_timestamp(offset)[1:-1]}]"


def assemble(results, plan: SplitPlan) -> str:
    """Merge per-segment results into the final transcript.

    Args:
        results: ``RawResult`` objects, one per planned segment, in any order.
        plan: Split plan the segments came from; its offsets are
            authoritative.

    Returns:
        Plain text, one ``[MM:SS] text`` line per transcript line, segments
        in plan order.  Failed segments contribute a single placeholder line.
    """
    out: List[str] = []
    for result in sorted(results, key=lambda r: r.index):
        offset = plan.offset_for(result.index)
        if result.failed:
            out.append(error_placeholder(offset))
            continue
        out.extend(format_line(line) for line in segment_lines(result.words, offset))
    return "\n".join(out)
