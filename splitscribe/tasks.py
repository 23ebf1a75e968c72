"""
Orchestration layer for the transcription pipeline.

``process_file`` runs one job end to end:

1. Measure the recording (skipped when the caller already knows it).
2. Build the split plan, automatic or from manual cut points.
3. Cut the recording into parts with ffmpeg.
4. Transcribe the parts in staggered batches.
5. Stitch the per-segment lines into one transcript.

Planning and splitting failures abort the job before any remote work.
Per-segment failures only leave a gap marker in the transcript.  Split parts
are deleted on every exit path; the source file belongs to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional, Sequence, Union

from . import audio_processor
from .config import Settings
from .dispatcher import BatchDispatcher
from .planner import plan
from .storage import BlobStore
from .stt_service import Recognizer
from .transcript_formatter import assemble

logger = logging.getLogger(__name__)


def build_dispatcher(settings: Settings) -> BatchDispatcher:
    """Wire the Cloud Storage and Speech clients into a dispatcher."""
    store = BlobStore(settings.bucket_name)
    recognizer = Recognizer(
        project_id=settings.project_id,
        location=settings.speech_location,
        model=settings.speech_model,
        timeout=settings.recognition_timeout_seconds,
    )
    return BatchDispatcher(store, recognizer, settings)


async def process_file(
    file_path: Union[str, Path],
    language_code: str,
    *,
    settings: Settings,
    dispatcher: BatchDispatcher,
    cutpoints: Optional[Sequence[float]] = None,
    duration: Optional[float] = None,
) -> str:
    """Transcribe a recording of any length.

    Args:
        file_path: Local audio file.  Left in place.
        language_code: BCP-47 tag, e.g. ``uk-UA``.
        settings: Runtime settings.
        dispatcher: Dispatcher used for the recognition calls.
        cutpoints: Validated manual cut positions in seconds.
        duration: Known duration in seconds; probed when omitted.

    Returns:
        The assembled transcript.

    Raises:
        PlanError: If the recording cannot be planned.
        SplitError: If duration probing or splitting fails.
    """
    source = Path(file_path)
    job_id = uuid.uuid4().hex[:12]
    logger.info(
        json.dumps({"event": "job_start", "job": job_id, "file": str(source), "language": language_code})
    )

    if duration is None:
        duration = await asyncio.to_thread(audio_processor.probe_duration, source)
    split_plan = plan(duration, settings.max_segment_seconds, cutpoints)
    logger.info(
        json.dumps(
            {
                "event": "plan",
                "job": job_id,
                "mode": split_plan.mode,
                "duration": duration,
                "offsets": list(split_plan.offsets),
            }
        )
    )

    parts = await asyncio.to_thread(
        audio_processor.split_audio,
        source,
        split_plan,
        codec=settings.split_codec,
        bitrate=settings.split_bitrate,
    )
    with audio_processor.temp_files(*(p for p in parts if p != source)):
        results = await dispatcher.transcribe_all(parts, split_plan, language_code)

    transcript = assemble(results, split_plan)
    logger.info(
        json.dumps(
            {
                "event": "job_complete",
                "job": job_id,
                "segments": len(results),
                "failed": sum(1 for r in results if r.failed),
            }
        )
    )
    return transcript
