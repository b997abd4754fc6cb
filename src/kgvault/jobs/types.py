"""Checkpoint job records and payloads."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kgvault.history.models import CheckpointWindow


class JobStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_INTERVENTION = "manual_intervention"


# Statuses load_pending() returns: jobs that still have work to do.
PENDING_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PENDING, JobStatus.RUNNING})

# Statuses a coordinator may claim (transition to running).
CLAIMABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PENDING})


def normalize_status(value: Any) -> JobStatus:
    """Unknown or missing status reads as queued."""
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value))
    except ValueError:
        return JobStatus.QUEUED


def normalize_seed_ids(values: Iterable[Any] | None) -> tuple[str, ...]:
    """Non-empty strings only, de-duplicated, sorted."""
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(sorted({v for v in values if isinstance(v, str) and v}))


def utcnow() -> datetime:
    return datetime.now(UTC)


_KNOWN_FIELDS = {
    "session_id",
    "seed_entity_ids",
    "reason",
    "hop_count",
    "window",
    "triggered_by",
    "sequence_number",
    "event_id",
    "actor",
}


@dataclass(frozen=True)
class CheckpointJobPayload:
    """What a checkpoint job should snapshot.

    ``extras`` keeps unknown keys from persisted payloads so a newer
    writer's fields survive a round trip through an older reader.
    """

    session_id: str
    seed_entity_ids: tuple[str, ...] = ()
    reason: str = "manual"
    hop_count: int = 2
    window: CheckpointWindow | None = None
    triggered_by: str | None = None
    sequence_number: int | None = None
    event_id: str | None = None
    actor: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "seed_entity_ids", normalize_seed_ids(self.seed_entity_ids))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "seed_entity_ids": list(self.seed_entity_ids),
            "reason": self.reason,
            "hop_count": self.hop_count,
        }
        if self.window is not None:
            data["window"] = self.window.to_dict()
        for name in ("triggered_by", "sequence_number", "event_id", "actor"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        for key, value in self.extras.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointJobPayload:
        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("Checkpoint job payload requires a session_id")
        sequence = data.get("sequence_number")
        return cls(
            session_id=session_id,
            seed_entity_ids=normalize_seed_ids(data.get("seed_entity_ids")),
            reason=str(data.get("reason") or "manual"),
            hop_count=int(data.get("hop_count") or 2),
            window=CheckpointWindow.from_dict(data.get("window")),
            triggered_by=data.get("triggered_by"),
            sequence_number=int(sequence) if sequence is not None else None,
            event_id=data.get("event_id"),
            actor=data.get("actor"),
            extras={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )


@dataclass
class CheckpointJob:
    """A persisted checkpoint job row.

    ``attempts`` counts attempts that have started; a crashed attempt is
    already counted when its row is reclaimed.
    """

    id: str
    payload: CheckpointJobPayload
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    last_error: str | None = None
    queued_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def session_id(self) -> str:
        return self.payload.session_id

    def with_status(self, status: JobStatus, **changes: Any) -> CheckpointJob:
        return replace(self, status=status, updated_at=utcnow(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "queued_at": self.queued_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "payload": self.payload.to_dict(),
        }


@dataclass
class CoordinatorMetrics:
    enqueued: int = 0
    completed: int = 0
    failed: int = 0
    retries: int = 0
