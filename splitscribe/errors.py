"""
Exception hierarchy for the transcription pipeline.

All package errors inherit from :class:`SplitscribeError` so entrypoints can
catch them in one place.
"""

from __future__ import annotations

from typing import Optional


class SplitscribeError(Exception):
    """Base exception for all splitscribe errors."""


class ConfigError(SplitscribeError):
    """An environment variable holds an unusable value."""


class PlanError(SplitscribeError):
    """The split plan cannot be built (bad duration or empty segment)."""


class SplitError(SplitscribeError):
    """The external splitter failed or produced incomplete output."""


class SegmentTranscriptionError(SplitscribeError):
    """A single segment could not be transcribed.

    Sibling segments are unaffected; the assembler renders a placeholder
    line at ``offset`` instead.
    """

    def __init__(self, message: str, offset: Optional[float] = None):
        self.offset = offset
        super().__init__(message)


class QuotaExhaustedError(SegmentTranscriptionError):
    """The recogniser rejected a request because the quota is used up."""


class ValidationError(SplitscribeError):
    """User supplied input was rejected.

    Attributes:
        line: The offending input line, if any.
        kind: Short machine readable reason (``format``, ``order``,
            ``range``, ``segment_too_long``, ``final_too_long``, ``empty``,
            ``language``).
    """

    def __init__(self, message: str, *, line: Optional[str] = None, kind: str = "format"):
        self.line = line
        self.kind = kind
        super().__init__(message)


class SessionExpiredError(SplitscribeError):
    """A negotiation session was not resolved before its timeout."""
