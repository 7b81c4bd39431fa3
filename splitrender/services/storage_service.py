"""Durable store backends.

The store is the only channel between the orchestrator and its workers:
key-addressed put/get/list with a privacy tag per object. Every key has exactly
one logical writer, so no conditional writes are needed.
"""

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from splitrender.config import get_settings
from splitrender.exceptions import ObjectNotFoundError, StorageError

logger = logging.getLogger(__name__)

settings = get_settings()

PRIVACY_VALUES = ("public", "private", "no-acl")

# GCS predefined ACL per privacy setting; "no-acl" leaves bucket defaults alone
_PREDEFINED_ACL: dict[str, str | None] = {
    "public": "publicRead",
    "private": "private",
    "no-acl": None,
}


@dataclass
class StoredObject:
    """One entry of a prefix listing."""

    key: str
    size: int
    last_modified: datetime
    metadata: dict[str, str] = field(default_factory=dict)


def _to_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


class LocalStorageService:
    """Local file storage for development and tests without GCS.

    Privacy and content type are kept in a sidecar JSON file under ``.meta/``.
    """

    META_DIR = ".meta"

    def __init__(self, base_path: str | Path | None = None) -> None:
        self.base_path = Path(base_path or settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = self.base_path / storage_key
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def _get_meta_path(self, storage_key: str) -> Path:
        return self._get_full_path(f"{self.META_DIR}/{storage_key}.json")

    def _write_meta(self, storage_key: str, privacy: str, content_type: str | None) -> None:
        meta = {"privacy": privacy}
        if content_type:
            meta["content_type"] = content_type
        self._get_meta_path(storage_key).write_text(json.dumps(meta))

    def put(
        self,
        storage_key: str,
        body: bytes | str,
        privacy: str = "private",
        content_type: str | None = None,
    ) -> None:
        """Write an object from bytes."""
        try:
            self._get_full_path(storage_key).write_bytes(_to_bytes(body))
            self._write_meta(storage_key, privacy, content_type)
        except OSError as e:
            raise StorageError(f"Local write failed for {storage_key}: {e}") from e

    def put_file(
        self,
        storage_key: str,
        local_path: str | Path,
        privacy: str = "private",
        content_type: str | None = None,
    ) -> None:
        """Write an object from a local file."""
        try:
            shutil.copy(str(local_path), str(self._get_full_path(storage_key)))
            self._write_meta(storage_key, privacy, content_type)
        except OSError as e:
            raise StorageError(f"Local upload failed for {storage_key}: {e}") from e

    def get(self, storage_key: str) -> bytes:
        full_path = self.base_path / storage_key
        if not full_path.is_file():
            raise ObjectNotFoundError(storage_key)
        return full_path.read_bytes()

    def download_file(self, storage_key: str, local_path: str | Path) -> str:
        """Copy an object to a local path."""
        full_path = self.base_path / storage_key
        if not full_path.is_file():
            raise ObjectNotFoundError(storage_key)
        shutil.copy(str(full_path), str(local_path))
        return str(local_path)

    def list(self, prefix: str) -> list[StoredObject]:
        """List objects whose key starts with ``prefix``, sorted by key."""
        objects: list[StoredObject] = []
        for path in self.base_path.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.base_path).as_posix()
            if key.startswith(f"{self.META_DIR}/") or not key.startswith(prefix):
                continue
            stat = path.stat()
            meta_path = self.base_path / self.META_DIR / f"{key}.json"
            metadata = json.loads(meta_path.read_text()) if meta_path.is_file() else {}
            objects.append(
                StoredObject(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    metadata=metadata,
                )
            )
        return sorted(objects, key=lambda o: o.key)

    def delete(self, storage_key: str) -> bool:
        """Delete an object."""
        full_path = self.base_path / storage_key
        if not full_path.is_file():
            return False
        full_path.unlink()
        meta_path = self.base_path / self.META_DIR / f"{storage_key}.json"
        if meta_path.is_file():
            meta_path.unlink()
        return True

    def file_exists(self, storage_key: str) -> bool:
        """Check if an object exists."""
        return (self.base_path / storage_key).is_file()


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self) -> None:
        from google.api_core import exceptions as gcs_exceptions
        from google.cloud import storage

        self._storage = storage
        self._exceptions = gcs_exceptions
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None
        self._owner_verified = False

    @property
    def client(self):
        if self._client is None:
            if settings.gcs_project_id:
                self._client = self._storage.Client(project=settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(settings.gcs_bucket_name)
        return self._bucket

    def _verify_owner(self) -> None:
        """Refuse to write into a bucket owned by another project."""
        if not settings.expected_bucket_owner or self._owner_verified:
            return
        self.bucket.reload()
        actual = str(self.bucket.project_number)
        if actual != settings.expected_bucket_owner:
            raise StorageError(
                f"Bucket {settings.gcs_bucket_name} is owned by {actual}, "
                f"expected {settings.expected_bucket_owner}"
            )
        self._owner_verified = True

    def put(
        self,
        storage_key: str,
        body: bytes | str,
        privacy: str = "private",
        content_type: str | None = None,
    ) -> None:
        """Upload an object from bytes."""
        self._verify_owner()
        blob = self.bucket.blob(storage_key)
        try:
            blob.upload_from_string(
                _to_bytes(body),
                content_type=content_type or "application/octet-stream",
                predefined_acl=_PREDEFINED_ACL[privacy],
            )
        except self._exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS upload failed for {storage_key}: {e}") from e

    def put_file(
        self,
        storage_key: str,
        local_path: str | Path,
        privacy: str = "private",
        content_type: str | None = None,
    ) -> None:
        """Upload a local file to GCS."""
        self._verify_owner()
        blob = self.bucket.blob(storage_key)
        try:
            blob.upload_from_filename(
                str(local_path),
                content_type=content_type,
                predefined_acl=_PREDEFINED_ACL[privacy],
            )
        except self._exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS upload failed for {storage_key}: {e}") from e

    def get(self, storage_key: str) -> bytes:
        blob = self.bucket.blob(storage_key)
        try:
            return blob.download_as_bytes()
        except self._exceptions.NotFound as e:
            raise ObjectNotFoundError(storage_key) from e
        except self._exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS download failed for {storage_key}: {e}") from e

    def download_file(self, storage_key: str, local_path: str | Path) -> str:
        """Download an object from GCS to a local path."""
        blob = self.bucket.blob(storage_key)
        try:
            blob.download_to_filename(str(local_path))
        except self._exceptions.NotFound as e:
            raise ObjectNotFoundError(storage_key) from e
        except self._exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS download failed for {storage_key}: {e}") from e
        return str(local_path)

    def list(self, prefix: str) -> list[StoredObject]:
        try:
            blobs = self.client.list_blobs(settings.gcs_bucket_name, prefix=prefix)
            return [
                StoredObject(
                    key=blob.name,
                    size=blob.size or 0,
                    last_modified=blob.updated,
                    metadata=dict(blob.metadata or {}),
                )
                for blob in blobs
            ]
        except self._exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS listing failed for {prefix}: {e}") from e

    def delete(self, storage_key: str) -> bool:
        """Delete an object from GCS."""
        blob = self.bucket.blob(storage_key)
        try:
            blob.delete()
        except self._exceptions.NotFound:
            return False
        return True

    def file_exists(self, storage_key: str) -> bool:
        """Check if an object exists in GCS."""
        return self.bucket.blob(storage_key).exists()


# Use LocalStorageService or GCSStorageService based on config
StorageService = LocalStorageService if settings.use_local_storage else GCSStorageService


@lru_cache
def get_storage_service() -> LocalStorageService | GCSStorageService:
    return StorageService()
