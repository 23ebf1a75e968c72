"""
HTTP entrypoint.

The chat front end talks to the pipeline through these routes:

* ``POST /transcribe`` – ``{"path", "language", "cutpoints"?}``; runs a job
  synchronously and returns the transcript.  Handy for manual runs.
* ``POST /conversations/<id>/media`` – ``{"path"}``; a new recording arrived.
* ``POST /conversations/<id>/language`` – ``{"choice"}``; language answer or
  ``cancel``.
* ``POST /conversations/<id>/timecodes`` – ``{"text"}``; manual cut points.
* ``POST /conversations/<id>/cancel``
* ``GET /conversations/<id>/messages`` – drains messages queued for the
  conversation (prompts, errors, transcript chunks).

The negotiator and all jobs live on one asyncio loop running in a
background thread.  Flask handlers only hand coroutines to that loop, so
session state is only ever touched from a single thread.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from flask import Flask, jsonify, request

from . import audio_processor
from .config import Settings, resolve_language
from .errors import PlanError, SplitError, ValidationError
from .negotiation import Negotiator, State
from .tasks import build_dispatcher, process_file
from .timecodes import validate_cutpoints

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)

REPLY_TIMEOUT = float(os.environ.get("REPLY_TIMEOUT", "5"))
OUTBOX_MAX_MESSAGES = int(os.environ.get("OUTBOX_MAX_MESSAGES", "500"))
OUTBOX_TTL_SECONDS = float(os.environ.get("OUTBOX_TTL_SECONDS", "86400"))


class OutboxNotifier:
    """Queues outgoing messages per conversation until the front end polls.

    Each conversation keeps at most ``max_messages`` (oldest dropped first).
    A conversation nobody polls for ``ttl`` seconds after its last message
    is discarded.
    """

    def __init__(
        self,
        max_messages: int = OUTBOX_MAX_MESSAGES,
        ttl: float = OUTBOX_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_messages = max_messages
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._messages: Dict[str, Deque[str]] = {}
        self._last_sent: Dict[str, float] = {}

    def send(self, conversation_id: str, text: str) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            queue = self._messages.setdefault(conversation_id, deque(maxlen=self.max_messages))
            if len(queue) == queue.maxlen:
                logger.warning(json.dumps({"event": "outbox_overflow", "conversation": conversation_id}))
            queue.append(text)
            self._last_sent[conversation_id] = now
        logger.info(json.dumps({"event": "message", "conversation": conversation_id, "chars": len(text)}))

    def drain(self, conversation_id: str) -> List[str]:
        with self._lock:
            self._prune(self._clock())
            self._last_sent.pop(conversation_id, None)
            return list(self._messages.pop(conversation_id, ()))

    def _prune(self, now: float) -> None:
        for conversation_id, sent_at in list(self._last_sent.items()):
            if now - sent_at > self.ttl:
                dropped = self._messages.pop(conversation_id, ())
                del self._last_sent[conversation_id]
                logger.warning(
                    json.dumps({"event": "outbox_expired", "conversation": conversation_id, "dropped": len(dropped)})
                )


class LoopRunner:
    """An asyncio event loop running forever on a daemon thread."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="splitscribe-loop", daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "LoopRunner":
        if not self._thread.is_alive():
            self._thread.start()
        return self

    def submit(self, coro) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)


def _log_failure(future: concurrent.futures.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error("Background task failed: %s", future.exception())


def create_app(
    settings: Optional[Settings] = None,
    *,
    negotiator: Optional[Negotiator] = None,
    notifier: Optional[OutboxNotifier] = None,
    runner: Optional[LoopRunner] = None,
    dispatcher=None,
    start_sweeper: bool = True,
) -> Flask:
    """Build the Flask app and start its background loop.

    Cloud clients are created lazily on the first job, so building the app
    needs no credentials.
    """
    settings = settings or Settings.from_env()
    notifier = notifier if notifier is not None else OutboxNotifier()
    runner = (runner or LoopRunner()).start()
    Path(settings.work_dir).mkdir(parents=True, exist_ok=True)

    cached: Dict[str, Any] = {"dispatcher": dispatcher}

    def get_dispatcher():
        if cached["dispatcher"] is None:
            cached["dispatcher"] = build_dispatcher(settings)
        return cached["dispatcher"]

    async def run_job(path, language_code, cutpoints=None, duration=None) -> str:
        return await process_file(
            path,
            language_code,
            settings=settings,
            dispatcher=get_dispatcher(),
            cutpoints=cutpoints,
            duration=duration,
        )

    negotiator = negotiator or Negotiator(settings, notifier, run_job)
    if start_sweeper:
        runner.submit(negotiator.run_sweeper()).add_done_callback(_log_failure)

    app = Flask(__name__)
    app.config["NEGOTIATOR"] = negotiator
    app.config["NOTIFIER"] = notifier
    app.config["RUNNER"] = runner

    def reply(coro):
        future = runner.submit(coro)
        try:
            session = future.result(timeout=REPLY_TIMEOUT)
        except concurrent.futures.TimeoutError:
            future.add_done_callback(_log_failure)
            return jsonify({"state": "processing"}), 202
        state = session.state if session is not None else State.IDLE
        return jsonify({"state": state.value}), 200

    @app.route("/transcribe", methods=["POST"])
    def transcribe():
        data = request.get_json(silent=True) or {}
        path = data.get("path")
        if not path:
            return jsonify({"error": "Missing 'path' in request"}), 400
        try:
            language_code = resolve_language(data.get("language", "uk"))
            cutpoints = None
            duration = None
            if data.get("cutpoints"):
                duration = audio_processor.probe_duration(path)
                raw = data["cutpoints"]
                text = "\n".join(raw) if isinstance(raw, list) else str(raw)
                cutpoints = [c.seconds for c in validate_cutpoints(text, duration, settings.max_segment_seconds)]
            transcript = runner.submit(
                run_job(path, language_code, cutpoints=cutpoints, duration=duration)
            ).result()
        except ValidationError as exc:
            return jsonify({"error": str(exc), "line": exc.line, "kind": exc.kind}), 400
        except (PlanError, SplitError) as exc:
            return jsonify({"error": str(exc)}), 422
        except Exception as exc:  # pragma: no cover
            logger.exception("Error in /transcribe")
            return jsonify({"error": f"Server error: {exc}"}), 500
        return jsonify({"transcript": transcript}), 200

    @app.route("/conversations/<conversation_id>/media", methods=["POST"])
    def media(conversation_id: str):
        data = request.get_json(silent=True) or {}
        if not data.get("path"):
            return jsonify({"error": "Missing 'path' in request"}), 400
        return reply(negotiator.submit_media(conversation_id, Path(data["path"])))

    @app.route("/conversations/<conversation_id>/language", methods=["POST"])
    def language(conversation_id: str):
        data = request.get_json(silent=True) or {}
        if not data.get("choice"):
            return jsonify({"error": "Missing 'choice' in request"}), 400
        return reply(negotiator.choose_language(conversation_id, data["choice"]))

    @app.route("/conversations/<conversation_id>/timecodes", methods=["POST"])
    def timecodes(conversation_id: str):
        data = request.get_json(silent=True) or {}
        if "text" not in data:
            return jsonify({"error": "Missing 'text' in request"}), 400
        return reply(negotiator.submit_timecodes(conversation_id, data["text"]))

    @app.route("/conversations/<conversation_id>/cancel", methods=["POST"])
    def cancel(conversation_id: str):
        async def _cancel():
            return negotiator.cancel(conversation_id)

        return reply(_cancel())

    @app.route("/conversations/<conversation_id>/messages", methods=["GET"])
    def messages(conversation_id: str):
        return jsonify({"messages": notifier.drain(conversation_id)}), 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    create_app().run(host="0.0.0.0", port=port)
