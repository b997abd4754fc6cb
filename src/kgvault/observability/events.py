"""Typed event dataclasses for kgvault.

Frozen dataclasses. Modules emit them without knowing who listens;
subscribers (structured logs by default) register typed handlers on
VaultEventLinker.
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Checkpoint jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckpointJobEnqueued:
    job_id: str
    session_id: str
    seed_count: int
    timestamp: str


@dataclass(frozen=True)
class CheckpointJobStarted:
    job_id: str
    session_id: str
    attempt: int
    timestamp: str


@dataclass(frozen=True)
class CheckpointJobCompleted:
    job_id: str
    session_id: str
    checkpoint_id: str
    attempts: int
    artifact_path: str | None
    timestamp: str


@dataclass(frozen=True)
class CheckpointJobAttemptFailed:
    job_id: str
    session_id: str
    attempts: int
    max_attempts: int
    retrying: bool
    error: str
    timestamp: str


@dataclass(frozen=True)
class CheckpointJobDeadLettered:
    job_id: str
    session_id: str
    attempts: int
    error: str
    timestamp: str


@dataclass(frozen=True)
class CheckpointJobsRehydrated:
    count: int
    reclaimed_running: int
    dead_lettered: int


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckpointArtifactWritten:
    checkpoint_id: str
    provider_id: str
    path: str
    size: int


# ---------------------------------------------------------------------------
# Temporal validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TemporalLinkRepaired:
    entity_id: str
    version_id: str
    previous_version_id: str
    success: bool


@dataclass(frozen=True)
class TemporalValidationCompleted:
    scanned_entities: int
    inspected_versions: int
    repaired_links: int
    issue_count: int
    unresolved_issues: int
    completed: bool
    elapsed_ms: float
