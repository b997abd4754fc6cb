"""Storage provider protocol, shared types and path handling.

Every backend (local disk, memory, S3, GCS) implements StorageProvider.
Code against the protocol; resolve instances through StorageRegistry.

Paths handed to a provider are *logical*: forward-slash separated,
relative to the provider prefix. normalize_path() collapses backslashes
and empty segments before a path is joined to the prefix, and list()
strips the prefix again, so callers never see backend namespaces.
"""

from __future__ import annotations

import io
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from kgvault.errors import NotFoundError, StorageError

DEFAULT_CHUNK_SIZE = 256 * 1024


@dataclass(frozen=True)
class BackupFileStat:
    """Live projection of backend metadata. Never persisted."""

    path: str
    size: int
    modified_at: datetime


@dataclass
class WriteOptions:
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ReadOptions:
    chunk_size: int = DEFAULT_CHUNK_SIZE  # bytes per chunk from open_read_stream()


def normalize_path(value: str) -> str:
    """``"\\\\a//b/"`` -> ``"a/b"``."""
    return "/".join(segment for segment in value.replace("\\", "/").split("/") if segment)


def normalize_prefix(value: str | None) -> str:
    """Like normalize_path, but whitespace-only segments are dropped too."""
    if not value:
        return ""
    segments = (segment.strip() for segment in value.replace("\\", "/").split("/"))
    return "/".join(segment for segment in segments if segment)


def join_key(prefix: str, path: str) -> str:
    """Join a normalized prefix and a logical path into a backend key."""
    relative = normalize_path(path)
    if not prefix:
        return relative
    if not relative:
        return prefix
    return f"{prefix}/{relative}"


def list_key_prefix(prefix: str, logical_prefix: str) -> str:
    """Backend key prefix for listing.

    A trailing slash on the logical prefix is kept so ``list("a/")`` does
    not match ``ab.json``; the empty logical prefix lists everything
    below the provider prefix.
    """
    relative = normalize_path(logical_prefix)
    trailing = "/" if relative and logical_prefix.replace("\\", "/").endswith("/") else ""
    if not prefix:
        return relative + trailing
    if not relative:
        return f"{prefix}/"
    return f"{prefix}/{relative}{trailing}"


def strip_prefix(prefix: str, key: str) -> str:
    normalized = key.replace("\\", "/")
    if prefix and normalized.startswith(f"{prefix}/"):
        return normalized[len(prefix) + 1 :]
    return normalized


def to_bytes(data: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


@runtime_checkable
class StorageProvider(Protocol):
    """Uniform artifact persistence contract.

    Implementations: LocalFilesystemStorageProvider, MemoryStorageProvider,
    S3StorageProvider, GCSStorageProvider.
    """

    id: str
    supports_streaming: bool

    async def ensure_ready(self) -> None: ...

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None: ...

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes: ...

    async def remove_file(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def stat(self, path: str) -> BackupFileStat | None: ...

    def list(self, prefix: str = "") -> AsyncIterator[str]: ...

    def open_read_stream(
        self, path: str, options: ReadOptions | None = None
    ) -> AsyncIterator[bytes]: ...

    def open_write_stream(self, path: str, options: WriteOptions | None = None): ...


class BufferedWriteStream:
    """Write side of a synthesized stream: chunks are buffered, then
    committed in one write_file() call when the context exits cleanly.

    Nothing becomes visible unless the whole body was written, and a
    backend failure on commit propagates out of the ``async with``.
    """

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self.bytes_written = 0

    async def write(self, chunk: bytes | str) -> None:
        data = to_bytes(chunk)
        self._buffer.write(data)
        self.bytes_written += len(data)

    def getvalue(self) -> bytes:
        return self._buffer.getvalue()


class BaseStorageProvider:
    """Prefix handling, error wrapping and synthesized streaming.

    Subclasses implement the core calls; streaming falls back to
    buffering through read_file()/write_file() unless overridden.
    """

    id: str = "storage"
    supports_streaming: bool = False
    prefix: str = ""

    def _key(self, path: str) -> str:
        return join_key(self.prefix, path)

    def _wrap(self, message: str, path: str | None, exc: BaseException) -> StorageError:
        return StorageError(message, provider_id=self.id, path=path, cause=exc)

    def _not_found(self, path: str, exc: BaseException | None = None) -> NotFoundError:
        return NotFoundError(
            f"Backup artifact not found: {normalize_path(path)}",
            provider_id=self.id,
            path=path,
            cause=exc,
        )

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes:
        raise NotImplementedError

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None:
        raise NotImplementedError

    async def open_read_stream(
        self,
        path: str,
        options: ReadOptions | None = None,
    ) -> AsyncIterator[bytes]:
        chunk_size = (options or ReadOptions()).chunk_size
        data = await self.read_file(path, options)
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]

    @asynccontextmanager
    async def open_write_stream(
        self, path: str, options: WriteOptions | None = None
    ) -> AsyncIterator[BufferedWriteStream]:
        stream = BufferedWriteStream()
        yield stream
        await self.write_file(path, stream.getvalue(), options)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r})"
