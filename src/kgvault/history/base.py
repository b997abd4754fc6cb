"""History collaborator protocol.

The graph store that owns entity versions and checkpoints sits behind
this interface. The validator and the checkpoint job coordinator only
ever talk to HistoryService; InMemoryHistoryService is the reference
implementation used by tests and single-process deployments.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from kgvault.history.models import CheckpointInfo, CheckpointWindow, EntityPage, EntityTimeline


@runtime_checkable
class HistoryService(Protocol):
    """Temporal history and checkpoint operations of the graph store."""

    # -------------------------------------------------------------------------
    # Version chains
    # -------------------------------------------------------------------------

    async def get_entity_timeline(self, entity_id: str, limit: int = 200) -> EntityTimeline:
        """Newest ``limit`` versions of an entity."""
        ...

    async def repair_previous_version_link(
        self,
        entity_id: str,
        version_id: str,
        previous_version_id: str,
        timestamp: datetime | None = None,
    ) -> bool:
        """Point ``version_id`` at ``previous_version_id``. False if not applied."""
        ...

    async def list_entities(self, limit: int = 25, offset: int = 0) -> EntityPage: ...

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    async def create_checkpoint(
        self,
        seed_entity_ids: list[str],
        reason: str = "manual",
        hop_count: int = 2,
        window: CheckpointWindow | None = None,
    ) -> str:
        """Create a checkpoint and return its id."""
        ...

    async def get_checkpoint(self, checkpoint_id: str) -> CheckpointInfo | None: ...

    async def export_checkpoint(self, checkpoint_id: str) -> dict[str, Any] | None:
        """JSON-serializable snapshot, or None if the checkpoint is unknown."""
        ...

    async def import_checkpoint(self, data: dict[str, Any]) -> str:
        """Recreate a checkpoint from an export; returns the new id."""
        ...

    async def delete_checkpoint(self, checkpoint_id: str) -> None: ...

    async def annotate_session_checkpoint(
        self,
        session_id: str,
        seed_entity_ids: list[str],
        status: str,
        checkpoint_id: str | None = None,
        **details: Any,
    ) -> None:
        """Mark a session's relationships with a checkpoint status."""
        ...
