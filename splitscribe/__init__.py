"""
Segmented transcription of long recordings.

The speech recogniser rejects audio longer than a fixed ceiling, so long
recordings are planned into segments, cut with ffmpeg, transcribed in
staggered batches and stitched back into one ``[MM:SS]`` annotated
transcript.  A small negotiation state machine lets a person choose the
cut points by hand when automatic splitting is not wanted.
"""

__version__ = "0.1.0"
