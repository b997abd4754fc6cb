"""Local filesystem storage provider.

Writes go to a temp file in the target directory and are moved into
place with os.replace(), so a reader sees either the old artifact or the
complete new one, never a partial file. Blocking filesystem calls run in
worker threads via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

from kgvault.errors import StorageError, StorageUnavailableError
from kgvault.storage.base import (
    BackupFileStat,
    BaseStorageProvider,
    ReadOptions,
    WriteOptions,
    normalize_path,
    to_bytes,
)


class LocalFilesystemStorageProvider(BaseStorageProvider):
    """Artifacts stored as plain files under ``base_path``."""

    supports_streaming = True

    def __init__(
        self,
        base_path: str | Path,
        *,
        allow_create: bool = True,
        id: str | None = None,
    ) -> None:
        self.base_path = Path(base_path).expanduser().resolve()
        self.allow_create = allow_create
        self.id = id or f"local:{self.base_path}"

    def _resolve(self, path: str) -> Path:
        relative = normalize_path(path)
        if ".." in relative.split("/"):
            raise StorageError(
                f"Path escapes the backup directory: {path!r}", provider_id=self.id, path=path
            )
        return self.base_path / relative if relative else self.base_path

    async def ensure_ready(self) -> None:
        def _ensure() -> None:
            if self.base_path.is_dir():
                return
            if not self.allow_create:
                raise StorageUnavailableError(
                    f"Backup directory {self.base_path} does not exist and creation is disabled",
                    provider_id=self.id,
                )
            self.base_path.mkdir(parents=True, exist_ok=True)

        try:
            await asyncio.to_thread(_ensure)
        except StorageError:
            raise
        except OSError as exc:
            raise StorageUnavailableError(
                f"Failed to prepare backup directory {self.base_path}",
                provider_id=self.id,
                cause=exc,
            ) from exc

    def _atomic_write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._atomic_write, target, to_bytes(data))
        except OSError as exc:
            raise self._wrap("Failed to write backup artifact", path, exc) from exc

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise self._not_found(path, exc) from exc
        except OSError as exc:
            raise self._wrap("Failed to read backup artifact", path, exc) from exc

    async def remove_file(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, missing_ok=True)
        except OSError as exc:
            raise self._wrap("Failed to delete backup artifact", path, exc) from exc

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def stat(self, path: str) -> BackupFileStat | None:
        target = self._resolve(path)
        try:
            info = await asyncio.to_thread(target.stat)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            raise self._wrap("Failed to obtain backup artifact metadata", path, exc) from exc
        if not target.is_file():
            return None
        return BackupFileStat(
            path=normalize_path(path),
            size=info.st_size,
            modified_at=datetime.fromtimestamp(info.st_mtime, tz=UTC),
        )

    def _walk(self, logical_prefix: str) -> list[str]:
        if not self.base_path.is_dir():
            return []
        matches: list[str] = []
        for root, dirs, files in os.walk(self.base_path):
            dirs.sort()
            for name in sorted(files):
                if name.startswith(".") and name.endswith(".tmp"):
                    continue
                relative = Path(root, name).relative_to(self.base_path).as_posix()
                if relative.startswith(logical_prefix):
                    matches.append(relative)
        return matches

    async def list(self, prefix: str = "") -> AsyncIterator[str]:
        logical = normalize_path(prefix)
        if logical and prefix.replace("\\", "/").endswith("/"):
            logical += "/"
        try:
            paths = await asyncio.to_thread(self._walk, logical)
        except OSError as exc:
            raise self._wrap("Failed to list backup artifacts", prefix, exc) from exc
        for path in paths:
            yield path

    async def open_read_stream(
        self,
        path: str,
        options: ReadOptions | None = None,
    ) -> AsyncIterator[bytes]:
        chunk_size = (options or ReadOptions()).chunk_size
        target = self._resolve(path)
        try:
            handle = await asyncio.to_thread(open, target, "rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise self._not_found(path, exc) from exc
        except OSError as exc:
            raise self._wrap("Failed to open backup artifact", path, exc) from exc
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(handle.read, chunk_size)
                except OSError as exc:
                    raise self._wrap("Failed to read backup artifact", path, exc) from exc
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    @asynccontextmanager
    async def open_write_stream(
        self, path: str, options: WriteOptions | None = None
    ) -> AsyncIterator[_LocalWriteStream]:
        target = self._resolve(path)
        try:
            stream = await asyncio.to_thread(_LocalWriteStream.open, target)
        except OSError as exc:
            raise self._wrap("Failed to open backup artifact for writing", path, exc) from exc
        try:
            yield stream
        except BaseException:
            await asyncio.to_thread(stream.abort)
            raise
        try:
            await asyncio.to_thread(stream.commit)
        except OSError as exc:
            raise self._wrap("Failed to write backup artifact", path, exc) from exc


class _LocalWriteStream:
    """Temp file that replaces the target only on commit()."""

    def __init__(self, target: Path, tmp_name: str, fd: int) -> None:
        self._target = target
        self._tmp_name = tmp_name
        self._handle = os.fdopen(fd, "wb")
        self.bytes_written = 0

    @classmethod
    def open(cls, target: Path) -> _LocalWriteStream:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        return cls(target, tmp_name, fd)

    async def write(self, chunk: bytes | str) -> None:
        data = to_bytes(chunk)
        await asyncio.to_thread(self._handle.write, data)
        self.bytes_written += len(data)

    def commit(self) -> None:
        self._handle.flush()
        os.fsync(self._handle.fileno())
        self._handle.close()
        os.replace(self._tmp_name, self._target)

    def abort(self) -> None:
        self._handle.close()
        with contextlib.suppress(OSError):
            os.unlink(self._tmp_name)

