"""cardshare_etl.archive

Durable storage for the raw uploaded CSV bytes (kept for audit/debugging).

Object keys are namespaced per user: ``{user_id}/{epoch_ms}_{filename}``.
Writes overwrite any existing object with the same key.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

CSV_CONTENT_TYPE = "text/csv"


def upload_key(user_id: str, filename: str, epoch_ms: int) -> str:
    """Per-user object key for a raw upload."""
    safe_name = Path(filename).name
    return f"{user_id}/{epoch_ms}_{safe_name}"


class Archiver(Protocol):
    def store(self, key: str, content: bytes, content_type: str = CSV_CONTENT_TYPE) -> str:
        """Store bytes under key and return the object path (or local path)."""
        ...


@dataclass
class GcsArchiver:
    """Upload raw CSV bytes to GCS. Bucket + prefix are set at construction."""

    bucket_name: str
    prefix: str = "csv-uploads"

    def store(self, key: str, content: bytes, content_type: str = CSV_CONTENT_TYPE) -> str:
        from google.cloud import storage  # type: ignore[import-untyped]

        obj_path = f"{self.prefix}/{key}" if self.prefix else key
        client = storage.Client()
        bucket = client.bucket(self.bucket_name)
        blob = bucket.blob(obj_path)
        blob.cache_control = "max-age=3600"
        blob.upload_from_string(content, content_type=content_type)
        return f"gs://{self.bucket_name}/{obj_path}"


@dataclass
class LocalArchiver:
    """Write raw content to a local directory (used in tests / without GCS)."""

    base_dir: Path

    def store(self, key: str, content: bytes, content_type: str = CSV_CONTENT_TYPE) -> str:
        dest = self.base_dir / key
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return str(dest)


@dataclass
class NullArchiver:
    """No-op archiver for unit tests and dry runs."""

    def store(self, key: str, content: bytes, content_type: str = CSV_CONTENT_TYPE) -> str:
        return f"null://{key}"
