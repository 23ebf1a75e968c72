"""
Runtime configuration.

All settings come from environment variables so the same code runs locally
and in a container.  ``Settings.from_env`` reads them once; components take
a ``Settings`` instance instead of reading ``os.environ`` themselves, which
keeps tests free of environment juggling.

Environment variables:

* ``BUCKET_NAME`` – Cloud Storage bucket used for segment uploads and
  recognition output.
* ``AUDIO_PREFIX`` / ``TRANSCRIPTS_PREFIX`` – folder prefixes inside the
  bucket.
* ``GOOGLE_CLOUD_PROJECT`` – project hosting the recogniser.  Resolved from
  application default credentials when unset.
* ``SPEECH_LOCATION`` / ``SPEECH_MODEL`` – recogniser region and model.
* ``MAX_SEGMENT_SECONDS`` – per-request duration ceiling (19 minutes).
* ``BATCH_SIZE`` / ``STAGGER_SECONDS`` – dispatcher concurrency shape.
* ``QUOTA_RETRY_DELAY`` / ``QUOTA_RETRY_JITTER`` / ``QUOTA_MAX_RETRIES`` –
  back-off applied when the recogniser reports quota exhaustion.
* ``RECOGNITION_TIMEOUT_SECONDS`` – how long to wait for one recognition job.
* ``SESSION_TIMEOUT_SECONDS`` / ``SWEEP_INTERVAL_SECONDS`` – manual split
  session expiry.
* ``WORK_DIR`` – local directory for converted audio and split parts.
* ``SPLIT_CODEC`` / ``SPLIT_BITRATE`` – ``copy`` stream-copies, anything
  else re-encodes with that codec.
* ``MESSAGE_LIMIT`` – longest message sent to a conversation in one piece.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .errors import ConfigError, ValidationError

# Menu code -> BCP-47 tag understood by the recogniser.
LANGUAGES: Dict[str, str] = {
    "en": "en-US",
    "uk": "uk-UA",
    "ru": "ru-RU",
    "pl": "pl-PL",
}

LANGUAGE_LABELS: Dict[str, str] = {
    "en": "English",
    "uk": "Ukrainian",
    "ru": "Russian",
    "pl": "Polish",
}


def resolve_language(choice: str) -> str:
    """Map a menu code (``en``) or a full tag (``en-US``) to a BCP-47 tag.

    Raises:
        ValidationError: If the language is not offered.
    """
    choice = (choice or "").strip()
    if choice in LANGUAGES:
        return LANGUAGES[choice]
    if choice in LANGUAGES.values():
        return choice
    raise ValidationError(f"Unsupported language: {choice!r}", line=choice, kind="language")


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    bucket_name: str = "splitscribe"
    audio_prefix: str = "audios/"
    transcripts_prefix: str = "transcripts/"
    project_id: Optional[str] = None
    speech_location: str = "us"
    speech_model: str = "chirp_3"
    max_segment_seconds: float = 19 * 60
    batch_size: int = 4
    stagger_seconds: float = 2.0
    quota_retry_delay: float = 60.0
    quota_retry_jitter: float = 5.0
    quota_max_retries: int = 5
    recognition_timeout_seconds: float = 3600.0
    session_timeout_seconds: float = 15 * 60
    sweep_interval_seconds: float = 60.0
    work_dir: str = "voice_messages"
    split_codec: str = "libmp3lame"
    split_bitrate: str = "320k"
    message_limit: int = 4000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``).

        Raises:
            ConfigError: If a numeric variable does not parse or a
                structural value (batch size, segment ceiling) is zero.
        """
        env = os.environ if env is None else env
        settings = cls(
            bucket_name=env.get("BUCKET_NAME", cls.bucket_name),
            audio_prefix=env.get("AUDIO_PREFIX", cls.audio_prefix),
            transcripts_prefix=env.get("TRANSCRIPTS_PREFIX", cls.transcripts_prefix),
            project_id=env.get("GOOGLE_CLOUD_PROJECT") or None,
            speech_location=env.get("SPEECH_LOCATION", cls.speech_location),
            speech_model=env.get("SPEECH_MODEL", cls.speech_model),
            max_segment_seconds=_number(env, "MAX_SEGMENT_SECONDS", cls.max_segment_seconds, float),
            batch_size=_number(env, "BATCH_SIZE", cls.batch_size, int),
            stagger_seconds=_number(env, "STAGGER_SECONDS", cls.stagger_seconds, float),
            quota_retry_delay=_number(env, "QUOTA_RETRY_DELAY", cls.quota_retry_delay, float),
            quota_retry_jitter=_number(env, "QUOTA_RETRY_JITTER", cls.quota_retry_jitter, float),
            quota_max_retries=_number(env, "QUOTA_MAX_RETRIES", cls.quota_max_retries, int),
            recognition_timeout_seconds=_number(
                env, "RECOGNITION_TIMEOUT_SECONDS", cls.recognition_timeout_seconds, float
            ),
            session_timeout_seconds=_number(
                env, "SESSION_TIMEOUT_SECONDS", cls.session_timeout_seconds, float
            ),
            sweep_interval_seconds=_number(
                env, "SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds, float
            ),
            work_dir=env.get("WORK_DIR", cls.work_dir),
            split_codec=env.get("SPLIT_CODEC", cls.split_codec),
            split_bitrate=env.get("SPLIT_BITRATE", cls.split_bitrate),
            message_limit=_number(env, "MESSAGE_LIMIT", cls.message_limit, int),
        )
        if settings.batch_size < 1:
            raise ConfigError("BATCH_SIZE must be at least 1")
        if settings.max_segment_seconds <= 0:
            raise ConfigError("MAX_SEGMENT_SECONDS must be positive")
        if settings.message_limit < 1:
            raise ConfigError("MESSAGE_LIMIT must be at least 1")
        return settings
