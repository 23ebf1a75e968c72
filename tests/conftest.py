"""
Shared fakes for the Cloud Storage and Speech clients.
"""

from __future__ import annotations

import json
import threading
from typing import Dict, List, Optional

import pytest
from google.api_core import exceptions as gexc

from splitscribe.config import Settings
from splitscribe.errors import QuotaExhaustedError, SegmentTranscriptionError


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str):
        self.bucket = bucket
        self.name = name

    def upload_from_filename(self, filename):
        with open(filename, "rb") as f:
            self.bucket.blobs[self.name] = f.read()

    def upload_from_string(self, data):
        self.bucket.blobs[self.name] = data.encode() if isinstance(data, str) else data

    def download_as_bytes(self):
        if self.name not in self.bucket.blobs:
            raise gexc.NotFound(self.name)
        return self.bucket.blobs[self.name]

    def delete(self):
        if self.name not in self.bucket.blobs:
            raise gexc.NotFound(self.name)
        self.bucket.deleted.append(self.name)
        del self.bucket.blobs[self.name]


class FakeBucket:
    def __init__(self, name: str):
        self.name = name
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []

    def blob(self, name):
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self):
        self.buckets: Dict[str, FakeBucket] = {}

    def bucket(self, name):
        return self.buckets.setdefault(name, FakeBucket(name))

    def list_blobs(self, bucket_name, prefix=""):
        bucket = self.bucket(bucket_name)
        return [FakeBlob(bucket, name) for name in list(bucket.blobs) if name.startswith(prefix)]


def words_payload(*words):
    """Recogniser JSON for ``(text, start, end)`` tuples."""
    return {
        "results": [
            {
                "alternatives": [
                    {
                        "transcript": " ".join(w[0] for w in words),
                        "words": [
                            {"word": text, "startOffset": f"{start}s", "endOffset": f"{end}s"}
                            for text, start, end in words
                        ],
                    }
                ]
            }
        ]
    }


class FakeRecognizer:
    """Stands in for :class:`splitscribe.stt_service.Recognizer`.

    Segments are recognised by the part stem embedded in the uploaded key.
    ``quota`` maps a stem to how many submissions fail with quota errors,
    ``broken`` holds stems whose recognition always fails.
    """

    def __init__(self, storage: FakeStorageClient, bucket_name: str, payloads: Dict[str, dict]):
        self.storage = storage
        self.bucket_name = bucket_name
        self.payloads = payloads
        self.quota: Dict[str, int] = {}
        self.broken: set = set()
        self.submissions: Dict[str, int] = {}
        self.events: List[tuple] = []
        self._lock = threading.Lock()

    def _stem(self, audio_uri: str) -> str:
        for stem in self.payloads:
            if f"/{stem}_" in audio_uri:
                return stem
        raise AssertionError(f"unknown segment {audio_uri}")

    def submit(self, audio_uri, language_code, output_uri):
        stem = self._stem(audio_uri)
        with self._lock:
            self.submissions[stem] = self.submissions.get(stem, 0) + 1
            self.events.append(("submit", stem))
            if self.quota.get(stem, 0) > 0:
                self.quota[stem] -= 1
                raise QuotaExhaustedError("Quota exhausted: try later")
        return {"stem": stem, "audio_uri": audio_uri, "output_uri": output_uri, "language": language_code}

    def wait(self, operation, audio_uri):
        stem = operation["stem"]
        if stem in self.broken:
            raise SegmentTranscriptionError("Recogniser error: bad audio")
        prefix = f"gs://{self.bucket_name}/"
        key = operation["output_uri"][len(prefix):] + "result.json"
        self.storage.bucket(self.bucket_name).blob(key).upload_from_string(json.dumps(self.payloads[stem]))
        with self._lock:
            self.events.append(("done", stem))
        return prefix + key


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ListNotifier:
    def __init__(self):
        self.messages: List[tuple] = []

    def send(self, conversation_id: str, text: str) -> None:
        self.messages.append((conversation_id, text))

    def texts(self, conversation_id: Optional[str] = None) -> List[str]:
        return [t for c, t in self.messages if conversation_id is None or c == conversation_id]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(bucket_name="test-bucket", work_dir=str(tmp_path / "work"), project_id="test-project")


@pytest.fixture
def storage_client() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> ListNotifier:
    return ListNotifier()
