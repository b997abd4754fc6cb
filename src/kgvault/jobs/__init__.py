"""Durable checkpoint jobs: store, coordinator and job records."""

from kgvault.jobs.coordinator import CheckpointJobCoordinator
from kgvault.jobs.store import (
    CheckpointJobStore,
    InMemoryCheckpointJobStore,
    PostgresCheckpointJobStore,
    SqliteCheckpointJobStore,
    requeue_dead_letter,
)
from kgvault.jobs.types import (
    PENDING_STATUSES,
    CheckpointJob,
    CheckpointJobPayload,
    CoordinatorMetrics,
    JobStatus,
    normalize_seed_ids,
    normalize_status,
)

__all__ = [
    "PENDING_STATUSES",
    "CheckpointJob",
    "CheckpointJobCoordinator",
    "CheckpointJobPayload",
    "CheckpointJobStore",
    "CoordinatorMetrics",
    "InMemoryCheckpointJobStore",
    "JobStatus",
    "PostgresCheckpointJobStore",
    "SqliteCheckpointJobStore",
    "normalize_seed_ids",
    "normalize_status",
    "requeue_dead_letter",
]
