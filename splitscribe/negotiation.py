"""
Manual split negotiation.

A conversation moves through these states::

    IDLE -> AWAITING_LANGUAGE_CHOICE -> DISPATCHING                  (fits one segment)
                                     -> AWAITING_TIMECODES -> DISPATCHING
    terminal: COMPLETED, CANCELLED, EXPIRED

Only the language and timecode states are stored.  A session is popped from
the store before its job is dispatched, so two flows never write the same
entry.  Each session carries its own ``created_at``, which makes expiry a
pure function of the session, the current time and the timeout.

Temp files (the received media and the converted MP3) belong to the flow
that holds the session: dispatch deletes them when the job ends, expiry
and cancellation delete them right away.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from . import audio_processor
from .config import LANGUAGE_LABELS, LANGUAGES, Settings, resolve_language
from .errors import PlanError, SessionExpiredError, SplitError, ValidationError
from .timecodes import Cutpoint, format_duration, validate_cutpoints

logger = logging.getLogger(__name__)

CANCEL = "cancel"
EMPTY_RESULT = "⚠️ Empty result."
TIMECODES_REMINDER = "Please reply with timecodes (HH:MM:SS), one per line, or cancel."


class State(str, enum.Enum):
    IDLE = "idle"
    AWAITING_LANGUAGE_CHOICE = "awaiting_language_choice"
    AWAITING_TIMECODES = "awaiting_timecodes"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Notifier(Protocol):
    def send(self, conversation_id: str, text: str) -> None:
        ...


RunJob = Callable[..., Awaitable[str]]
PrepareAudio = Callable[[Path, Path], float]


@dataclass
class ManualSplitSession:
    conversation_id: str
    state: State
    created_at: float
    source_path: Optional[Path] = None
    target_file_path: Optional[Path] = None
    language_code: Optional[str] = None
    total_duration: Optional[float] = None

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.created_at > timeout

    def temp_paths(self) -> List[Path]:
        return [p for p in (self.target_file_path, self.source_path) if p]


class SessionStore:
    """Pending sessions keyed by conversation id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ManualSplitSession] = {}

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, conversation_id: str) -> Optional[ManualSplitSession]:
        return self._sessions.get(conversation_id)

    def put(self, session: ManualSplitSession) -> Optional[ManualSplitSession]:
        """Store ``session``, returning whatever it replaced."""
        previous = self._sessions.get(session.conversation_id)
        self._sessions[session.conversation_id] = session
        return previous

    def pop(self, conversation_id: str) -> Optional[ManualSplitSession]:
        return self._sessions.pop(conversation_id, None)

    def expired(self, now: float, timeout: float) -> List[ManualSplitSession]:
        return [s for s in self._sessions.values() if s.is_expired(now, timeout)]


def prepare_audio(source_path: Path, target_path: Path) -> float:
    """Convert the received media to MP3 and return its measured duration."""
    audio_processor.convert_to_mp3(source_path, target_path)
    return audio_processor.probe_duration(target_path)


def split_message(text: str, limit: int) -> List[str]:
    """Break ``text`` into chunks of at most ``limit`` characters.

    Cuts prefer the last newline, then the last space, inside the limit.
    """
    chunks: List[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        cut = remaining.rfind("\n", 0, limit + 1)
        if cut <= 0:
            cut = remaining.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].strip()
    return chunks


class Negotiator:
    """Drives one session per conversation from media upload to transcript.

    Args:
        settings: Runtime settings (ceiling, timeout, work dir).
        notifier: Delivers messages to a conversation.
        run_job: ``async run_job(path, language_code, cutpoints=None,
            duration=None) -> transcript``.
        store: Session table; a fresh one by default.
        prepare: Converts media and measures duration; run in a thread.
        clock: Monotonic seconds, injectable for tests.
    """

    def __init__(
        self,
        settings: Settings,
        notifier: Notifier,
        run_job: RunJob,
        *,
        store: Optional[SessionStore] = None,
        prepare: PrepareAudio = prepare_audio,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.notifier = notifier
        self.store = store if store is not None else SessionStore()
        self._run_job = run_job
        self._prepare = prepare
        self._clock = clock

    def state_of(self, conversation_id: str) -> State:
        session = self.store.get(conversation_id)
        return session.state if session else State.IDLE

    async def submit_media(self, conversation_id: str, source_path: Path) -> ManualSplitSession:
        """Start a new session for freshly received media.

        Any session already open for the conversation is discarded together
        with its temp files.
        """
        previous = self.store.pop(conversation_id)
        if previous is not None:
            self._log("session_replaced", previous)
            _remove(previous.temp_paths())

        session = ManualSplitSession(
            conversation_id=conversation_id,
            state=State.AWAITING_LANGUAGE_CHOICE,
            created_at=self._clock(),
            source_path=Path(source_path),
        )
        self.store.put(session)
        self._log("session_open", session)
        options = ", ".join(f"{code} ({LANGUAGE_LABELS[code]})" for code in LANGUAGES)
        self.notifier.send(conversation_id, f"Choose language: {options}, or {CANCEL}.")
        return session

    async def choose_language(self, conversation_id: str, choice: str) -> Optional[ManualSplitSession]:
        """Handle the language answer: dispatch or ask for timecodes."""
        pending = self.store.get(conversation_id)
        if pending is None:
            self.notifier.send(conversation_id, "⚠️ Expired.")
            return None
        if pending.state is not State.AWAITING_LANGUAGE_CHOICE:
            self.notifier.send(conversation_id, TIMECODES_REMINDER)
            return pending
        session = self._require(conversation_id, State.AWAITING_LANGUAGE_CHOICE)
        if session is None:
            return None
        if (choice or "").strip().lower() == CANCEL:
            return self.cancel(conversation_id)
        try:
            language_code = resolve_language(choice)
        except ValidationError as exc:
            self.notifier.send(conversation_id, f"❌ {exc}")
            return session

        self.store.pop(conversation_id)
        target = Path(self.settings.work_dir) / f"{conversation_id}_{int(time.time() * 1000)}_audio.mp3"
        session = replace(session, target_file_path=target, language_code=language_code)
        self.notifier.send(conversation_id, "⬇️ Checking duration...")
        try:
            duration = await asyncio.to_thread(self._prepare, session.source_path, target)
        except Exception:
            logger.exception("Could not prepare %s", session.source_path)
            session.state = State.CANCELLED
            _remove(session.temp_paths())
            self.notifier.send(conversation_id, "❌ Error preparing file.")
            return session
        session.total_duration = duration

        if conversation_id in self.store:
            # Newer media arrived while converting; it owns the conversation now.
            session.state = State.CANCELLED
            _remove(session.temp_paths())
            self._log("session_superseded", session)
            return session

        if duration <= self.settings.max_segment_seconds:
            return await self._dispatch(session)

        session = replace(session, state=State.AWAITING_TIMECODES, created_at=self._clock())
        self.store.put(session)
        self._log("awaiting_timecodes", session)
        limit = f"{self.settings.max_segment_seconds / 60:g}"
        self.notifier.send(
            conversation_id,
            f"⚠️ File is too long ({format_duration(duration)}).\n"
            f"Service allows max {limit} min segments.\n\n"
            "Reply with a list of timecodes (HH:MM:SS), one per line, where I should split.\n"
            "Example for a 45 min recording:\n00:15:00\n00:30:00\n\n"
            f"Each segment must be at most {limit} minutes.",
        )
        return session

    async def submit_timecodes(self, conversation_id: str, text: str) -> Optional[ManualSplitSession]:
        """Validate manual cut points; dispatch on success, keep waiting otherwise."""
        session = self._require(conversation_id, State.AWAITING_TIMECODES)
        if session is None:
            return None
        try:
            cutpoints = validate_cutpoints(
                text, session.total_duration, self.settings.max_segment_seconds
            )
        except ValidationError as exc:
            logger.info(json.dumps({"event": "timecodes_rejected", "conversation": conversation_id, "kind": exc.kind}))
            self.notifier.send(conversation_id, f"❌ {exc}")
            return session

        self.store.pop(conversation_id)
        self.notifier.send(conversation_id, "✅ Timecodes accepted. Splitting and processing...")
        return await self._dispatch(session, cutpoints)

    def cancel(self, conversation_id: str) -> Optional[ManualSplitSession]:
        session = self.store.pop(conversation_id)
        if session is None:
            return None
        session.state = State.CANCELLED
        _remove(session.temp_paths())
        self._log("session_cancelled", session)
        self.notifier.send(conversation_id, "Cancelled.")
        return session

    def sweep(self, now: Optional[float] = None) -> List[ManualSplitSession]:
        """Expire every session older than the timeout."""
        now = self._clock() if now is None else now
        expired = []
        for session in self.store.expired(now, self.settings.session_timeout_seconds):
            self.store.pop(session.conversation_id)
            expired.append(self._expire(session))
        return expired

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        """Sweep expired sessions forever, every ``interval`` seconds."""
        interval = self.settings.sweep_interval_seconds if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def _require(self, conversation_id: str, state: State) -> Optional[ManualSplitSession]:
        session = self.store.get(conversation_id)
        if session is None or session.state is not state:
            return None
        try:
            self._check_alive(session)
        except SessionExpiredError:
            self.store.pop(conversation_id)
            self._expire(session)
            return None
        return session

    def _check_alive(self, session: ManualSplitSession) -> None:
        if session.is_expired(self._clock(), self.settings.session_timeout_seconds):
            raise SessionExpiredError(f"Session for {session.conversation_id} expired")

    def _expire(self, session: ManualSplitSession) -> ManualSplitSession:
        waiting_for_timecodes = session.state is State.AWAITING_TIMECODES
        session.state = State.EXPIRED
        _remove(session.temp_paths())
        self._log("session_expired", session)
        if waiting_for_timecodes:
            self.notifier.send(session.conversation_id, "❌ Timecode entry timed out. File deleted.")
        else:
            self.notifier.send(session.conversation_id, "❌ Request expired.")
        return session

    async def _dispatch(
        self,
        session: ManualSplitSession,
        cutpoints: Optional[Sequence[Cutpoint]] = None,
    ) -> ManualSplitSession:
        session.state = State.DISPATCHING
        self._log("dispatching", session)
        conversation_id = session.conversation_id
        self.notifier.send(conversation_id, f"🎙️ Transcribing ({session.language_code})...")
        try:
            transcript = await self._run_job(
                session.target_file_path,
                session.language_code,
                cutpoints=[c.seconds for c in cutpoints] if cutpoints else None,
                duration=session.total_duration,
            )
            for chunk in split_message(transcript or EMPTY_RESULT, self.settings.message_limit):
                self.notifier.send(conversation_id, chunk)
        except (PlanError, SplitError) as exc:
            logger.error(json.dumps({"event": "job_failed", "conversation": conversation_id, "error": str(exc)}))
            self.notifier.send(conversation_id, f"❌ Transcription failed: {exc}")
        except Exception:
            logger.exception("Transcription failed for %s", conversation_id)
            self.notifier.send(conversation_id, "❌ Transcription failed.")
        finally:
            session.state = State.COMPLETED
            _remove(session.temp_paths())
            self._log("session_completed", session)
        return session

    def _log(self, event: str, session: ManualSplitSession) -> None:
        logger.info(
            json.dumps(
                {"event": event, "conversation": session.conversation_id, "state": session.state.value}
            )
        )


def _remove(paths: Sequence[Path]) -> None:
    for path in paths:
        audio_processor.cleanup_temp_file(path)
