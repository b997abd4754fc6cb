"""CLI configuration: the shared VaultConfig plus store/registry builders."""

from __future__ import annotations

from pathlib import Path

from kgvault.config import JobStoreConfig, VaultConfig, load_config
from kgvault.jobs.store import (
    CheckpointJobStore,
    PostgresCheckpointJobStore,
    SqliteCheckpointJobStore,
)
from kgvault.storage.factory import build_registry
from kgvault.storage.registry import StorageRegistry


def get_config(storage_path: Path | None = None) -> VaultConfig:
    """Get the current configuration."""
    return load_config(storage_path)


def get_registry(config: VaultConfig) -> StorageRegistry:
    return build_registry(config.storage)


async def open_store(config: JobStoreConfig) -> CheckpointJobStore:
    """Postgres when a DSN is configured, otherwise the local SQLite file."""
    if config.dsn:
        store: CheckpointJobStore = await PostgresCheckpointJobStore.from_dsn(
            config.dsn, config.table
        )
    else:
        store = SqliteCheckpointJobStore(config.sqlite_path, config.table)
    await store.initialize()
    return store
