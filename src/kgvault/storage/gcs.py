"""Google Cloud Storage provider.

google-cloud-storage is optional and loaded on first use. The client has
no server-side streaming API that maps onto ours, so streams are
synthesized by BaseStorageProvider (buffer, then one upload on commit).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from kgvault.errors import CapabilityMissingError, StorageUnavailableError
from kgvault.storage import _capabilities
from kgvault.storage.base import (
    BackupFileStat,
    BaseStorageProvider,
    ReadOptions,
    WriteOptions,
    list_key_prefix,
    normalize_path,
    normalize_prefix,
    strip_prefix,
    to_bytes,
)

logger = logging.getLogger(__name__)


def is_not_found(exc: BaseException) -> bool:
    """google.api_core NotFound carries ``code == 404``."""
    code = getattr(exc, "code", None)
    try:
        return int(code) == 404
    except (TypeError, ValueError):
        return False


class GCSStorageProvider(BaseStorageProvider):
    """Artifacts stored as blobs in one GCS bucket, under an optional prefix."""

    supports_streaming = False

    def __init__(
        self,
        bucket: str,
        *,
        id: str | None = None,
        prefix: str | None = None,
        project: str | None = None,
        location: str | None = None,
        credentials_file: str | None = None,
        credentials_info: dict[str, Any] | None = None,
        auto_create: bool = False,
        make_public: bool = False,
        list_page_size: int = 1000,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("GCSStorageProvider requires a bucket name")
        self.bucket_name = bucket
        self.prefix = normalize_prefix(prefix)
        self.id = id or f"gcs:{bucket}" + (f"/{self.prefix}" if self.prefix else "")
        self.project = project
        self.location = location
        self.credentials_file = credentials_file
        self.credentials_info = credentials_info
        self.auto_create = auto_create
        self.make_public = make_public
        self.list_page_size = max(1, list_page_size)
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                storage = _capabilities.require(_capabilities.GCS)
                if self.credentials_info:
                    self._client = storage.Client.from_service_account_info(
                        self.credentials_info, project=self.project
                    )
                elif self.credentials_file:
                    self._client = storage.Client.from_service_account_json(
                        self.credentials_file, project=self.project
                    )
                else:
                    self._client = storage.Client(project=self.project)
        return self._client

    def _blob(self, path: str) -> Any:
        return self._get_client().bucket(self.bucket_name).blob(self._key(path))

    async def ensure_ready(self) -> None:
        def _ensure() -> None:
            client = self._get_client()
            bucket = client.bucket(self.bucket_name)
            if bucket.exists():
                return
            if not self.auto_create:
                raise StorageUnavailableError(
                    f"GCS bucket {self.bucket_name} does not exist and auto_create is disabled",
                    provider_id=self.id,
                )
            client.create_bucket(self.bucket_name, location=self.location)
            logger.info("Created GCS bucket %s for provider %s", self.bucket_name, self.id)

        try:
            await asyncio.to_thread(_ensure)
        except StorageUnavailableError:
            raise
        except CapabilityMissingError:
            raise
        except Exception as exc:
            raise StorageUnavailableError(
                f"Failed to access GCS bucket {self.bucket_name}", provider_id=self.id, cause=exc
            ) from exc

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None:
        options = options or WriteOptions()

        def _upload() -> None:
            blob = self._blob(path)
            if options.metadata:
                blob.metadata = {k: str(v) for k, v in options.metadata.items()}
            blob.upload_from_string(
                to_bytes(data), content_type=options.content_type or "application/octet-stream"
            )
            if self.make_public:
                blob.make_public()

        try:
            await asyncio.to_thread(_upload)
        except CapabilityMissingError:
            raise
        except Exception as exc:
            raise self._wrap("Failed to upload backup artifact to GCS", path, exc) from exc

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes:
        try:
            return await asyncio.to_thread(lambda: self._blob(path).download_as_bytes())
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                raise self._not_found(path, exc) from exc
            raise self._wrap("Failed to read backup artifact from GCS", path, exc) from exc

    async def remove_file(self, path: str) -> None:
        try:
            await asyncio.to_thread(lambda: self._blob(path).delete())
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                return
            raise self._wrap("Failed to delete backup artifact from GCS", path, exc) from exc

    def _get_blob(self, path: str) -> Any:
        return self._get_client().bucket(self.bucket_name).get_blob(self._key(path))

    async def exists(self, path: str) -> bool:
        return await self.stat(path) is not None

    async def stat(self, path: str) -> BackupFileStat | None:
        try:
            blob = await asyncio.to_thread(self._get_blob, path)
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                return None
            raise self._wrap("Failed to obtain GCS object metadata", path, exc) from exc
        if blob is None:
            return None
        updated = getattr(blob, "updated", None)
        return BackupFileStat(
            path=normalize_path(path),
            size=int(getattr(blob, "size", 0) or 0),
            modified_at=updated if isinstance(updated, datetime) else datetime.now(UTC),
        )

    def _fetch_page(self, key_prefix: str, token: str | None) -> tuple[list[str], str | None]:
        iterator = self._get_client().list_blobs(
            self.bucket_name,
            prefix=key_prefix,
            page_token=token,
            page_size=self.list_page_size,
        )
        page = next(iterator.pages, None)
        names = [blob.name for blob in page] if page is not None else []
        return names, iterator.next_page_token

    async def list(self, prefix: str = "") -> AsyncIterator[str]:
        key_prefix = list_key_prefix(self.prefix, prefix)
        token: str | None = None
        while True:
            try:
                names, token = await asyncio.to_thread(self._fetch_page, key_prefix, token)
            except CapabilityMissingError:
                raise
            except Exception as exc:
                raise self._wrap("Failed to list GCS backup artifacts", prefix, exc) from exc
            for name in names:
                yield strip_prefix(self.prefix, name)
            if not token:
                return
