"""GCS-backed document store: uploaded report PDFs by opaque ``gs://`` path."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from google.cloud import storage

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass(frozen=True)
class StoredDocument:
    path: str  # gs://bucket/documents/YYYY-MM-DD/<id>-<name>
    content_hash: str  # SHA-256 hex
    size: int


def content_hash(contents: bytes) -> str:
    return hashlib.sha256(contents).hexdigest()


def object_key(filename: str, *, today: datetime | None = None) -> str:
    """Unique object key: date folder, random id, sanitized original name."""
    day = (today or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    sanitized = _UNSAFE_CHARS.sub("_", filename or "document.pdf")
    return f"documents/{day}/{uuid.uuid4().hex}-{sanitized}"


class GcsDocumentStore:
    """Thin async wrapper over a GCS bucket. Blocking client calls run in a thread."""

    def __init__(self, bucket: str, client: storage.Client | None = None) -> None:
        self.bucket_name = bucket
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _blob_name(self, path: str) -> str:
        prefix = f"gs://{self.bucket_name}/"
        if path.startswith(prefix):
            return path[len(prefix):].lstrip("/")
        if path.startswith("gs://"):
            raise ValueError(f"Path {path} is not in bucket {self.bucket_name}")
        return path.lstrip("/")

    async def upload(self, contents: bytes, filename: str, content_type: str | None = None) -> StoredDocument:
        key = object_key(filename)
        blob = self.client.bucket(self.bucket_name).blob(key)
        await asyncio.to_thread(
            blob.upload_from_string, contents, content_type=content_type or "application/pdf"
        )
        path = f"gs://{self.bucket_name}/{key}"
        logger.info("Uploaded %s (%d bytes) to %s", filename, len(contents), path)
        return StoredDocument(path=path, content_hash=content_hash(contents), size=len(contents))

    async def delete(self, path: str) -> bool:
        blob = self.client.bucket(self.bucket_name).blob(self._blob_name(path))
        exists = await asyncio.to_thread(blob.exists)
        if not exists:
            return False
        await asyncio.to_thread(blob.delete)
        logger.info("Deleted %s from GCS", path)
        return True
