"""Entity version history and checkpoints: the graph store's contract."""

from kgvault.history.base import HistoryService
from kgvault.history.memory import InMemoryHistoryService
from kgvault.history.models import (
    CheckpointInfo,
    CheckpointWindow,
    EntityPage,
    EntitySummary,
    EntityTimeline,
    SessionAnnotation,
    VersionRecord,
)

__all__ = [
    "CheckpointInfo",
    "CheckpointWindow",
    "EntityPage",
    "EntitySummary",
    "EntityTimeline",
    "HistoryService",
    "InMemoryHistoryService",
    "SessionAnnotation",
    "VersionRecord",
]
