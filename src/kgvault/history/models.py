"""Data models for entity version history and checkpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class VersionRecord:
    """One version of an entity.

    ``previous_version_id`` links to the version this one superseded.
    Unique per entity by ``version_id``.
    """

    entity_id: str
    version_id: str
    timestamp: datetime
    previous_version_id: str | None = None
    hash: str | None = None
    change_set_id: str | None = None


@dataclass
class EntityTimeline:
    """A window of an entity's versions, newest first as returned by the store."""

    entity_id: str
    versions: list[VersionRecord] = field(default_factory=list)


@dataclass
class EntitySummary:
    id: str
    type: str | None = None
    name: str | None = None


@dataclass
class EntityPage:
    items: list[EntitySummary]
    total: int


@dataclass
class CheckpointWindow:
    """Optional time window a checkpoint was scoped to."""

    since: datetime | None = None
    until: datetime | None = None
    time_range: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
            "time_range": self.time_range,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CheckpointWindow | None:
        if not data:
            return None
        since = data.get("since")
        until = data.get("until")
        return cls(
            since=datetime.fromisoformat(since) if isinstance(since, str) else None,
            until=datetime.fromisoformat(until) if isinstance(until, str) else None,
            time_range=data.get("time_range"),
        )


@dataclass
class CheckpointInfo:
    id: str
    timestamp: datetime
    reason: str
    seed_entity_ids: list[str]
    member_count: int = 0
    hop_count: int = 2
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionAnnotation:
    """Checkpoint status marker attached to a session's relationships."""

    session_id: str
    seed_entity_ids: list[str]
    status: str
    checkpoint_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
