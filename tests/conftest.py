"""Shared fixtures for kgvault tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from kgvault.history import InMemoryHistoryService
from kgvault.storage import MemoryStorageProvider, StorageRegistry


@pytest.fixture(autouse=True)
def _reset_state():
    """Reset emitter and optional-dependency cache around each test."""
    from kgvault.observability.emitter import reset
    from kgvault.storage._capabilities import reset_capabilities

    reset()
    reset_capabilities()
    yield
    reset()
    reset_capabilities()


@pytest.fixture
def history() -> InMemoryHistoryService:
    return InMemoryHistoryService()


@pytest.fixture
def memory_provider() -> MemoryStorageProvider:
    return MemoryStorageProvider(id="memory", prefix="backups")


@pytest.fixture
def registry(memory_provider) -> StorageRegistry:
    return StorageRegistry.with_default(memory_provider)


T0 = datetime(2026, 1, 1, tzinfo=UTC)


def ts(minutes: int) -> datetime:
    """Deterministic timestamps: T0 + ``minutes``."""
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def graph(history) -> InMemoryHistoryService:
    """Small graph: a - b - c, d isolated, each entity with a clean 3-version chain."""
    for eid in ("a", "b", "c", "d"):
        history.add_entity(eid, type="function", name=eid.upper())
        for i in range(3):
            history.record_version(eid, f"{eid}-v{i + 1}", ts(i))
    history.add_relationship("a", "b", "CALLS")
    history.add_relationship("b", "c", "CALLS")
    return history
