"""
Cloud Storage helpers.

Segments are uploaded under per-segment unique keys so concurrent jobs that
happen to share a file name never overwrite each other's blobs.  Deletes are
best effort: a failed delete is logged and never fails the pipeline.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Optional, Union

from google.api_core import exceptions as gexc
from google.cloud import storage

logger = logging.getLogger(__name__)


class BlobStore:
    """Thin wrapper around one Cloud Storage bucket."""

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    def uri(self, key: str) -> str:
        return f"gs://{self.bucket_name}/{key}"

    def key_from_uri(self, uri: str) -> str:
        """Strip the ``gs://<bucket>/`` prefix from a URI in this bucket."""
        prefix = f"gs://{self.bucket_name}/"
        if not uri.startswith(prefix):
            raise ValueError(f"{uri} is not in bucket {self.bucket_name}")
        return uri[len(prefix):]

    @staticmethod
    def unique_key(prefix: str, local_path: Union[str, Path], suffix: Optional[str] = None) -> str:
        """Build ``<prefix><stem>_<random><suffix>`` for a local file."""
        path = Path(local_path)
        ext = path.suffix if suffix is None else suffix
        return f"{prefix}{path.stem}_{uuid.uuid4().hex[:12]}{ext}"

    def upload(self, local_path: Union[str, Path], key: str) -> str:
        """Upload a local file under ``key`` and return its ``gs://`` URI."""
        blob = self._bucket.blob(key)
        blob.upload_from_filename(str(local_path))
        logger.debug("Uploaded %s to %s", local_path, self.uri(key))
        return self.uri(key)

    def download(self, key: str) -> bytes:
        return self._bucket.blob(key).download_as_bytes()

    def delete(self, key: Optional[str]) -> bool:
        """Delete ``key``; returns ``False`` instead of raising on failure."""
        if not key:
            return False
        try:
            self._bucket.blob(key).delete()
            return True
        except gexc.NotFound:
            logger.debug("Blob %s already gone", key)
            return False
        except gexc.GoogleAPIError as exc:
            logger.warning("Could not delete blob %s: %s", self.uri(key), exc)
            return False

    def delete_prefix(self, prefix: str) -> int:
        """Delete every blob under ``prefix``; returns how many were removed."""
        if not prefix:
            return 0
        removed = 0
        try:
            blobs = list(self._client.list_blobs(self.bucket_name, prefix=prefix))
        except gexc.GoogleAPIError as exc:
            logger.warning("Could not list blobs under %s: %s", self.uri(prefix), exc)
            return 0
        for blob in blobs:
            if self.delete(blob.name):
                removed += 1
        return removed
