"""
Google Speech-to-Text (v2) service wrapper.

Segments are transcribed with ``batch_recognize``: the audio is referenced
by its Cloud Storage URI and the recogniser writes a JSON result file back
to the bucket.  Word time offsets and automatic punctuation are always
enabled because the transcript formatter depends on both.

Quota rejections (gRPC ``RESOURCE_EXHAUSTED``) are translated into
:class:`~splitscribe.errors.QuotaExhaustedError`, the only error the
dispatcher retries.  Every other failure becomes a
:class:`~splitscribe.errors.SegmentTranscriptionError`.

Usage::

    recognizer = Recognizer(project_id="my-project", location="us")
    operation = recognizer.submit(audio_uri, "uk-UA", output_uri)
    result_uri = recognizer.wait(operation, audio_uri)
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import google.auth
from google.api_core import exceptions as gexc
from google.api_core.client_options import ClientOptions
from google.cloud import speech_v2
from google.cloud.speech_v2.types import cloud_speech

from .errors import QuotaExhaustedError, SegmentTranscriptionError
from .timecodes import parse_offset

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600.0


@dataclass(frozen=True)
class WordToken:
    """A recognised word; times are relative to the start of its segment."""

    text: str
    start: float
    end: float


class Recognizer:
    """Submits batch recognition jobs and resolves their output location."""

    def __init__(
        self,
        *,
        project_id: Optional[str] = None,
        location: str = "us",
        model: str = "chirp_3",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.location = location
        self.model = model
        self.timeout = timeout
        self._project_id = project_id
        self._client = client or speech_v2.SpeechClient(
            client_options=ClientOptions(api_endpoint=f"{location}-speech.googleapis.com")
        )

    @property
    def project_id(self) -> str:
        if not self._project_id:
            _, project = google.auth.default()
            if not project:
                raise SegmentTranscriptionError("No Google Cloud project configured")
            self._project_id = project
        return self._project_id

    @property
    def recognizer_path(self) -> str:
        return f"projects/{self.project_id}/locations/{self.location}/recognizers/_"

    def build_request(
        self, audio_uri: str, language_code: str, output_uri: str
    ) -> cloud_speech.BatchRecognizeRequest:
        config = cloud_speech.RecognitionConfig(
            auto_decoding_config=cloud_speech.AutoDetectDecodingConfig(),
            model=self.model,
            language_codes=[language_code],
            features=cloud_speech.RecognitionFeatures(
                enable_word_time_offsets=True,
                enable_automatic_punctuation=True,
            ),
        )
        return cloud_speech.BatchRecognizeRequest(
            recognizer=self.recognizer_path,
            config=config,
            files=[cloud_speech.BatchRecognizeFileMetadata(uri=audio_uri)],
            recognition_output_config=cloud_speech.RecognitionOutputConfig(
                gcs_output_config=cloud_speech.GcsOutputConfig(uri=output_uri),
            ),
        )

    def submit(self, audio_uri: str, language_code: str, output_uri: str):
        """Start a batch recognition job and return the long-running operation.

        Raises:
            QuotaExhaustedError: If the service reports quota exhaustion.
            SegmentTranscriptionError: For any other API failure.
        """
        request = self.build_request(audio_uri, language_code, output_uri)
        logger.info("Starting STT job for %s", audio_uri)
        try:
            return self._client.batch_recognize(request=request)
        except gexc.ResourceExhausted as exc:
            raise QuotaExhaustedError(f"Quota exhausted: {exc.message}") from exc
        except gexc.GoogleAPIError as exc:
            raise SegmentTranscriptionError(f"Recognition request failed: {exc}") from exc

    def wait(self, operation, audio_uri: str) -> str:
        """Block until ``operation`` finishes and return the result file URI.

        Raises:
            QuotaExhaustedError: If the job itself was rejected for quota.
            SegmentTranscriptionError: If the job failed or produced no
                output for ``audio_uri``.
        """
        try:
            response = operation.result(timeout=self.timeout)
        except gexc.ResourceExhausted as exc:
            raise QuotaExhaustedError(f"Quota exhausted: {exc.message}") from exc
        except (gexc.GoogleAPIError, TimeoutError, concurrent.futures.TimeoutError) as exc:
            raise SegmentTranscriptionError(f"Recognition failed: {exc}") from exc

        if audio_uri not in response.results:
            raise SegmentTranscriptionError("Recogniser returned no result for segment")
        file_result = response.results[audio_uri]
        if file_result.error.code:
            raise SegmentTranscriptionError(f"Recogniser error: {file_result.error.message}")
        result_uri = file_result.cloud_storage_result.uri or file_result.uri
        if not result_uri:
            raise SegmentTranscriptionError("Output URI missing in recogniser response")
        logger.info("STT job complete for %s", audio_uri)
        return result_uri


def parse_words(payload: Dict[str, Any]) -> List[WordToken]:
    """Flatten a batch recognition JSON result into word tokens.

    Only the first (most probable) alternative of each result is used.

    Args:
        payload: Parsed JSON written by the recogniser.

    Returns:
        Words in spoken order with offsets in seconds.
    """
    words: List[WordToken] = []
    for result in payload.get("results", []):
        alternatives = result.get("alternatives") or []
        if not alternatives:
            continue
        for wi in alternatives[0].get("words", []):
            text = wi.get("word", "")
            if not text:
                continue
            words.append(
                WordToken(
                    text=text,
                    start=parse_offset(wi.get("startOffset", wi.get("start_offset"))),
                    end=parse_offset(wi.get("endOffset", wi.get("end_offset"))),
                )
            )
    return words
