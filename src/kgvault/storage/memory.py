"""In-memory storage provider for tests and ephemeral setups."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

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


@dataclass
class _StoredObject:
    data: bytes
    modified_at: datetime
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class MemoryStorageProvider(BaseStorageProvider):
    """Dict-backed provider. Keys carry the configured prefix like a bucket would."""

    def __init__(self, *, id: str = "memory", prefix: str | None = None) -> None:
        self.id = id
        self.prefix = normalize_prefix(prefix)
        self._objects: dict[str, _StoredObject] = {}

    async def ensure_ready(self) -> None:
        return None

    async def write_file(
        self,
        path: str,
        data: bytes | str,
        options: WriteOptions | None = None,
    ) -> None:
        options = options or WriteOptions()
        self._objects[self._key(path)] = _StoredObject(
            data=to_bytes(data),
            modified_at=datetime.now(UTC),
            content_type=options.content_type,
            metadata=dict(options.metadata),
        )

    async def read_file(self, path: str, options: ReadOptions | None = None) -> bytes:
        stored = self._objects.get(self._key(path))
        if stored is None:
            raise self._not_found(path)
        return stored.data

    async def remove_file(self, path: str) -> None:
        self._objects.pop(self._key(path), None)

    async def exists(self, path: str) -> bool:
        return self._key(path) in self._objects

    async def stat(self, path: str) -> BackupFileStat | None:
        stored = self._objects.get(self._key(path))
        if stored is None:
            return None
        return BackupFileStat(
            path=normalize_path(path), size=len(stored.data), modified_at=stored.modified_at
        )

    async def list(self, prefix: str = "") -> AsyncIterator[str]:
        key_prefix = list_key_prefix(self.prefix, prefix)
        for key in sorted(self._objects):
            if key.startswith(key_prefix):
                yield strip_prefix(self.prefix, key)

    def metadata(self, path: str) -> dict[str, str] | None:
        """Stored metadata for ``path`` (memory provider only)."""
        stored = self._objects.get(self._key(path))
        return dict(stored.metadata) if stored else None

    def content_type(self, path: str) -> str | None:
        stored = self._objects.get(self._key(path))
        return stored.content_type if stored else None
