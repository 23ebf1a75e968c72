"""
Batch dispatcher for segment transcription.

Segments run in fixed-size batches.  Within a batch every segment starts
``position * stagger_seconds`` after the batch so quota is not hit all at
once, and the next batch starts only after every member of the current one
has finished, successfully or not.

Each segment goes through upload → recognise → download → parse.  Only
the recognise step is retried, and only on quota exhaustion.  Uploaded
audio and recognition output are removed from the bucket whatever the
outcome.  A segment that fails for good yields a failed ``RawResult`` so
the transcript can show a gap marker at the right offset.

The storage and speech clients are synchronous; their calls run in worker
threads via ``asyncio.to_thread`` while the event loop interleaves segments.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from .config import Settings
from .errors import SplitError
from .planner import SplitPlan
from .retry import RetryPolicy
from .storage import BlobStore
from .stt_service import Recognizer, WordToken, parse_words

logger = logging.getLogger(__name__)


@dataclass
class SegmentJob:
    """Work item for one segment, owned by the dispatcher."""

    index: int
    file_path: Path
    language_code: str
    time_offset: float
    retry_count: int = 0


@dataclass(frozen=True)
class RawResult:
    """Recognition output for one segment, or the reason it is missing."""

    index: int
    offset: float
    words: Tuple[WordToken, ...] = ()
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class BatchDispatcher:
    def __init__(
        self,
        store: BlobStore,
        recognizer: Recognizer,
        settings: Settings,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._recognizer = recognizer
        self._settings = settings
        self._policy = policy or RetryPolicy(
            delay=settings.quota_retry_delay,
            jitter=settings.quota_retry_jitter,
            max_retries=settings.quota_max_retries,
        )
        self._sleep = sleep

    async def transcribe_all(
        self,
        segment_paths: Sequence[Union[str, Path]],
        plan: SplitPlan,
        language_code: str,
    ) -> List[RawResult]:
        """Transcribe every segment and return results in segment order.

        Args:
            segment_paths: Split parts in segment order.
            plan: The plan the parts were cut from.
            language_code: BCP-47 tag passed to the recogniser.

        Raises:
            SplitError: If the number of parts does not match the plan.
        """
        if len(segment_paths) != len(plan):
            raise SplitError(f"Got {len(segment_paths)} segment files for a {len(plan)} segment plan")

        jobs = [
            SegmentJob(index=i, file_path=Path(path), language_code=language_code, time_offset=plan.offset_for(i))
            for i, path in enumerate(segment_paths)
        ]
        batch_size = self._settings.batch_size
        results: List[RawResult] = []
        for start in range(0, len(jobs), batch_size):
            batch = jobs[start:start + batch_size]
            logger.info(
                json.dumps({"event": "batch_start", "first": start, "size": len(batch), "total": len(jobs)})
            )
            results.extend(
                await asyncio.gather(*(self._staggered(job, position) for position, job in enumerate(batch)))
            )
        return sorted(results, key=lambda r: r.index)

    async def _staggered(self, job: SegmentJob, position: int) -> RawResult:
        if position:
            await self._sleep(position * self._settings.stagger_seconds)
        return await self.transcribe_segment(job)

    async def transcribe_segment(self, job: SegmentJob) -> RawResult:
        """Run one segment end to end; never raises."""
        settings = self._settings
        audio_key = self._store.unique_key(settings.audio_prefix, job.file_path)
        output_prefix = self._store.unique_key(settings.transcripts_prefix, job.file_path, suffix="/")
        try:
            audio_uri = await asyncio.to_thread(self._store.upload, job.file_path, audio_key)
            result_uri = await self._recognize(job, audio_uri, self._store.uri(output_prefix))
            raw = await asyncio.to_thread(self._store.download, self._store.key_from_uri(result_uri))
            words = parse_words(json.loads(raw))
        except Exception as exc:
            logger.exception(
                json.dumps(
                    {
                        "event": "segment_failed",
                        "segment": job.index,
                        "offset": job.time_offset,
                        "retries": job.retry_count,
                        "error": str(exc),
                    }
                )
            )
            return RawResult(index=job.index, offset=job.time_offset, error=str(exc) or type(exc).__name__)
        finally:
            await asyncio.to_thread(self._store.delete, audio_key)
            await asyncio.to_thread(self._store.delete_prefix, output_prefix)

        logger.info(
            json.dumps(
                {"event": "segment_done", "segment": job.index, "file": job.file_path.name, "words": len(words)}
            )
        )
        return RawResult(index=job.index, offset=job.time_offset, words=tuple(words))

    async def _recognize(self, job: SegmentJob, audio_uri: str, output_uri: str) -> str:
        attempts = 0

        async def submit_and_wait() -> str:
            nonlocal attempts
            attempts += 1
            job.retry_count = attempts - 1
            operation = await asyncio.to_thread(
                self._recognizer.submit, audio_uri, job.language_code, output_uri
            )
            return await asyncio.to_thread(self._recognizer.wait, operation, audio_uri)

        return await self._policy.retrying(sleep=self._sleep)(submit_and_wait)
