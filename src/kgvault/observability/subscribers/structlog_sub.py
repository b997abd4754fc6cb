"""Routes every kgvault event to a structured log line.

Always-on subscriber, registered by emitter.configure().
"""

from __future__ import annotations

from dataclasses import asdict

from kgvault.observability.events import (
    CheckpointArtifactWritten,
    CheckpointJobAttemptFailed,
    CheckpointJobCompleted,
    CheckpointJobDeadLettered,
    CheckpointJobEnqueued,
    CheckpointJobsRehydrated,
    CheckpointJobStarted,
    TemporalLinkRepaired,
    TemporalValidationCompleted,
)
from kgvault.observability.linker import VaultEventLinker
from kgvault.observability.logging import get_logger


def _get_logger():
    """Resolved per call so it follows the active formatter."""
    return get_logger("kgvault.events")


def register_structlog_subscriber() -> None:
    """Register log handlers for all events on VaultEventLinker."""

    @VaultEventLinker.on(CheckpointJobEnqueued)
    def _log_enqueued(event: CheckpointJobEnqueued) -> None:
        _get_logger().info("checkpoint_job.enqueued", **asdict(event))

    @VaultEventLinker.on(CheckpointJobStarted)
    def _log_started(event: CheckpointJobStarted) -> None:
        _get_logger().debug("checkpoint_job.started", **asdict(event))

    @VaultEventLinker.on(CheckpointJobCompleted)
    def _log_completed(event: CheckpointJobCompleted) -> None:
        _get_logger().info("checkpoint_job.completed", **asdict(event))

    @VaultEventLinker.on(CheckpointJobAttemptFailed)
    def _log_attempt_failed(event: CheckpointJobAttemptFailed) -> None:
        _get_logger().warning("checkpoint_job.attempt_failed", **asdict(event))

    @VaultEventLinker.on(CheckpointJobDeadLettered)
    def _log_dead_lettered(event: CheckpointJobDeadLettered) -> None:
        _get_logger().error("checkpoint_job.dead_lettered", **asdict(event))

    @VaultEventLinker.on(CheckpointJobsRehydrated)
    def _log_rehydrated(event: CheckpointJobsRehydrated) -> None:
        _get_logger().info("checkpoint_job.rehydrated", **asdict(event))

    @VaultEventLinker.on(CheckpointArtifactWritten)
    def _log_artifact(event: CheckpointArtifactWritten) -> None:
        _get_logger().info("checkpoint.artifact_written", **asdict(event))

    @VaultEventLinker.on(TemporalLinkRepaired)
    def _log_repair(event: TemporalLinkRepaired) -> None:
        if event.success:
            _get_logger().info("temporal.link_repaired", **asdict(event))
        else:
            _get_logger().warning("temporal.link_repair_failed", **asdict(event))

    @VaultEventLinker.on(TemporalValidationCompleted)
    def _log_validation(event: TemporalValidationCompleted) -> None:
        _get_logger().info("temporal.validation_completed", **asdict(event))
