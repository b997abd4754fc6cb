"""kgvault observability: typed events + structured logging.

Public API:
    emit(event)     - fire-and-forget emission (no-op if not configured)
    configure(cfg)  - set up logging, emitter and subscribers, once
    reset()         - reset for testing
    get_logger(name) - structured logger (structlog by default)

Consumers subscribe with typed handlers:

    @VaultEventLinker.on(CheckpointJobDeadLettered)
    def page_oncall(event): ...
"""

from kgvault.observability.config import ObservabilityConfig
from kgvault.observability.emitter import configure, emit, is_configured, reset
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
from kgvault.observability.logging import (
    LogDestination,
    LogFormatter,
    get_logger,
    register_destination,
    register_formatter,
)

__all__ = [
    "emit",
    "configure",
    "is_configured",
    "reset",
    "ObservabilityConfig",
    "VaultEventLinker",
    "get_logger",
    "LogFormatter",
    "LogDestination",
    "register_formatter",
    "register_destination",
    "CheckpointJobEnqueued",
    "CheckpointJobStarted",
    "CheckpointJobCompleted",
    "CheckpointJobAttemptFailed",
    "CheckpointJobDeadLettered",
    "CheckpointJobsRehydrated",
    "CheckpointArtifactWritten",
    "TemporalLinkRepaired",
    "TemporalValidationCompleted",
]
