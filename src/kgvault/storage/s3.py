"""S3-compatible storage provider (AWS S3, MinIO, R2, ...).

boto3 is optional: it is imported through the capability loader the
first time a client is needed, and a missing install surfaces as
CapabilityMissingError. boto3 clients are thread-safe and pool their
connections, so calls run through asyncio.to_thread without locking.

Streaming is native: reads iterate the response body, writes go through
boto3's managed (multipart) upload on commit.
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kgvault.errors import CapabilityMissingError, StorageError, StorageUnavailableError
from kgvault.storage import _capabilities
from kgvault.storage.base import (
    BackupFileStat,
    BaseStorageProvider,
    BufferedWriteStream,
    ReadOptions,
    WriteOptions,
    list_key_prefix,
    normalize_path,
    normalize_prefix,
    strip_prefix,
    to_bytes,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NotFound", "NoSuchKey", "NoSuchBucket"}


@dataclass
class S3Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None

    def __repr__(self) -> str:
        return f"S3Credentials(access_key_id={self.access_key_id!r}, secret_access_key='***')"


def _error_code(exc: BaseException) -> str | None:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        code = response.get("Error", {}).get("Code")
        if code is not None:
            return str(code)
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if status is not None:
            return str(status)
    return None


def is_not_found(exc: BaseException) -> bool:
    return _error_code(exc) in _NOT_FOUND_CODES


class S3StorageProvider(BaseStorageProvider):
    """Artifacts stored as objects in one bucket, under an optional key prefix."""

    supports_streaming = True

    def __init__(
        self,
        bucket: str,
        *,
        id: str | None = None,
        prefix: str | None = None,
        region: str | None = None,
        endpoint: str | None = None,
        force_path_style: bool = False,
        credentials: S3Credentials | None = None,
        auto_create: bool = False,
        make_public: bool = False,
        server_side_encryption: str | None = None,
        kms_key_id: str | None = None,
        upload_concurrency: int = 4,
        upload_part_size: int = 8 * 1024 * 1024,
        list_page_size: int = 1000,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3StorageProvider requires a bucket name")
        self.bucket = bucket
        self.prefix = normalize_prefix(prefix)
        self.id = id or f"s3:{bucket}" + (f"/{self.prefix}" if self.prefix else "")
        self.region = region
        self.endpoint = endpoint
        self.force_path_style = force_path_style
        self.credentials = credentials
        self.auto_create = auto_create
        self.make_public = make_public
        self.server_side_encryption = server_side_encryption
        self.kms_key_id = kms_key_id
        self.upload_concurrency = max(1, upload_concurrency)
        self.upload_part_size = max(5 * 1024 * 1024, upload_part_size)
        self.list_page_size = max(1, min(1000, list_page_size))
        self._client = client
        self._client_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Client
    # -------------------------------------------------------------------------

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                boto3 = _capabilities.require(_capabilities.S3)
                from botocore.config import Config

                kwargs: dict[str, Any] = {
                    "region_name": self.region,
                    "endpoint_url": self.endpoint,
                    "config": Config(
                        s3={"addressing_style": "path" if self.force_path_style else "auto"},
                        max_pool_connections=max(10, self.upload_concurrency * 2),
                    ),
                }
                if self.credentials is not None:
                    kwargs["aws_access_key_id"] = self.credentials.access_key_id
                    kwargs["aws_secret_access_key"] = self.credentials.secret_access_key
                    kwargs["aws_session_token"] = self.credentials.session_token
                self._client = boto3.session.Session().client("s3", **kwargs)
        return self._client

    async def _call(self, method: str, **params: Any) -> Any:
        client = await asyncio.to_thread(self._get_client)
        return await asyncio.to_thread(getattr(client, method), **params)

    def _encryption_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.server_side_encryption:
            params["ServerSideEncryption"] = self.server_side_encryption
        if self.kms_key_id:
            params["SSEKMSKeyId"] = self.kms_key_id
        return params

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def ensure_ready(self) -> None:
        try:
            await self._call("head_bucket", Bucket=self.bucket)
            return
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if not is_not_found(exc):
                raise StorageUnavailableError(
                    f"Failed to access S3 bucket {self.bucket}", provider_id=self.id, cause=exc
                ) from exc
            if not self.auto_create:
                raise StorageUnavailableError(
                    f"S3 bucket {self.bucket} does not exist and auto_create is disabled",
                    provider_id=self.id,
                    cause=exc,
                ) from exc

        params: dict[str, Any] = {"Bucket": self.bucket}
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            await self._call("create_bucket", **params)
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if _error_code(exc) in {"BucketAlreadyOwnedByYou"}:
                return
            raise StorageUnavailableError(
                f"Failed to create S3 bucket {self.bucket}", provider_id=self.id, cause=exc
            ) from exc
        logger.info("Created S3 bucket %s for provider %s", self.bucket, self.id)

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None:
        options = options or WriteOptions()
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self._key(path),
            "Body": to_bytes(data),
            **self._encryption_params(),
        }
        if options.content_type:
            params["ContentType"] = options.content_type
        metadata = {k: str(v) for k, v in options.metadata.items() if v is not None}
        if metadata:
            params["Metadata"] = metadata
        try:
            await self._call("put_object", **params)
        except CapabilityMissingError:
            raise
        except Exception as exc:
            raise self._wrap("Failed to upload backup artifact to S3", path, exc) from exc
        await self._apply_visibility(path)

    async def _apply_visibility(self, path: str) -> None:
        if not self.make_public:
            return
        try:
            await self._call(
                "put_object_acl", Bucket=self.bucket, Key=self._key(path), ACL="public-read"
            )
        except CapabilityMissingError:
            raise
        except Exception as exc:
            raise self._wrap("Failed to make S3 backup artifact public", path, exc) from exc

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes:
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=self._key(path))
            return await asyncio.to_thread(_read_body, response.get("Body"))
        except StorageError:
            raise
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                raise self._not_found(path, exc) from exc
            raise self._wrap("Failed to read backup artifact from S3", path, exc) from exc

    async def remove_file(self, path: str) -> None:
        try:
            await self._call("delete_object", Bucket=self.bucket, Key=self._key(path))
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                return
            raise self._wrap("Failed to delete backup artifact from S3", path, exc) from exc

    async def _head(self, path: str) -> dict[str, Any] | None:
        try:
            return await self._call("head_object", Bucket=self.bucket, Key=self._key(path))
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                return None
            raise self._wrap("Failed to obtain S3 object metadata", path, exc) from exc

    async def exists(self, path: str) -> bool:
        return await self._head(path) is not None

    async def stat(self, path: str) -> BackupFileStat | None:
        head = await self._head(path)
        if head is None:
            return None
        modified = head.get("LastModified")
        if not isinstance(modified, datetime):
            modified = datetime.now(UTC)
        return BackupFileStat(
            path=normalize_path(path),
            size=int(head.get("ContentLength") or 0),
            modified_at=modified,
        )

    async def list(self, prefix: str = "") -> AsyncIterator[str]:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Prefix": list_key_prefix(self.prefix, prefix),
            "MaxKeys": self.list_page_size,
        }
        while True:
            try:
                response = await self._call("list_objects_v2", **params)
            except CapabilityMissingError:
                raise
            except Exception as exc:
                raise self._wrap("Failed to list S3 backup artifacts", prefix, exc) from exc
            for item in response.get("Contents") or []:
                key = item.get("Key")
                if key:
                    yield strip_prefix(self.prefix, key)
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                return
            params["ContinuationToken"] = token

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def open_read_stream(
        self,
        path: str,
        options: ReadOptions | None = None,
    ) -> AsyncIterator[bytes]:
        chunk_size = (options or ReadOptions()).chunk_size
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=self._key(path))
        except CapabilityMissingError:
            raise
        except Exception as exc:
            if is_not_found(exc):
                raise self._not_found(path, exc) from exc
            raise self._wrap("Failed to read backup artifact from S3", path, exc) from exc

        body = response.get("Body")
        if body is None or not hasattr(body, "read"):
            data = to_bytes(body or b"")
            for start in range(0, len(data), chunk_size):
                yield data[start : start + chunk_size]
            return
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(body.read, chunk_size)
                except CapabilityMissingError:
                    raise
                except Exception as exc:
                    raise self._wrap("S3 read stream failed", path, exc) from exc
                if not chunk:
                    break
                yield chunk
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    @asynccontextmanager
    async def open_write_stream(
        self, path: str, options: WriteOptions | None = None
    ) -> AsyncIterator[BufferedWriteStream]:
        options = options or WriteOptions()
        stream = BufferedWriteStream()
        yield stream

        extra_args: dict[str, Any] = self._encryption_params()
        if options.content_type:
            extra_args["ContentType"] = options.content_type
        if options.metadata:
            extra_args["Metadata"] = {k: str(v) for k, v in options.metadata.items()}
        try:
            client = await asyncio.to_thread(self._get_client)
            from boto3.s3.transfer import TransferConfig

            config = TransferConfig(
                multipart_chunksize=self.upload_part_size,
                max_concurrency=self.upload_concurrency,
            )
            await asyncio.to_thread(
                client.upload_fileobj,
                io.BytesIO(stream.getvalue()),
                self.bucket,
                self._key(path),
                ExtraArgs=extra_args or None,
                Config=config,
            )
        except StorageError:
            raise
        except CapabilityMissingError:
            raise
        except Exception as exc:
            raise self._wrap("Failed to upload backup artifact stream to S3", path, exc) from exc
        await self._apply_visibility(path)


def _read_body(body: Any) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if hasattr(body, "read"):
        try:
            return body.read()
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()
    return to_bytes(body)
