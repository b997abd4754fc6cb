"""Checkpoint manager: snapshot to a storage artifact, and restore from one."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime

from kgvault.errors import CheckpointJobError
from kgvault.history.base import HistoryService
from kgvault.history.models import CheckpointWindow
from kgvault.observability import emit
from kgvault.observability.events import CheckpointArtifactWritten
from kgvault.storage.base import BackupFileStat, WriteOptions
from kgvault.storage.registry import StorageRegistry

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "checkpoints/"
CONTENT_TYPE = "application/json"


def artifact_path(checkpoint_id: str) -> str:
    return f"{ARTIFACT_PREFIX}{checkpoint_id}.json"


@dataclass
class CheckpointArtifact:
    """A checkpoint persisted to a storage provider."""

    checkpoint_id: str
    provider_id: str
    path: str
    size: int
    created_at: datetime
    reason: str = "manual"
    seed_count: int = 0


class CheckpointManager:
    """Create checkpoints and keep their exports as durable artifacts.

    The history service computes the snapshot; the manager serializes it
    and hands it to a provider from the registry. Every artifact lives at
    ``checkpoints/<checkpoint_id>.json``.
    """

    def __init__(self, history: HistoryService, registry: StorageRegistry):
        self.history = history
        self.registry = registry

    async def create(
        self,
        seed_entity_ids: list[str],
        reason: str = "manual",
        hop_count: int = 2,
        window: CheckpointWindow | None = None,
        provider_id: str | None = None,
    ) -> CheckpointArtifact:
        """Create a checkpoint and write its export as an artifact.

        If the artifact cannot be written, the just-created checkpoint is
        deleted so no checkpoint exists without its artifact.
        """
        provider = self.registry.resolve(provider_id)
        checkpoint_id = await self.history.create_checkpoint(
            list(seed_entity_ids), reason, hop_count, window
        )
        if not checkpoint_id:
            raise CheckpointJobError("Checkpoint creation returned an empty identifier")

        path = artifact_path(checkpoint_id)
        try:
            exported = await self.history.export_checkpoint(checkpoint_id)
            if exported is None:
                raise CheckpointJobError(f"Checkpoint {checkpoint_id} vanished before export")
            body = json.dumps(exported, default=str, sort_keys=True).encode("utf-8")
            await provider.write_file(
                path,
                body,
                WriteOptions(
                    content_type=CONTENT_TYPE,
                    metadata={
                        "checkpoint_id": checkpoint_id,
                        "reason": reason,
                        "seed_count": str(len(seed_entity_ids)),
                    },
                ),
            )
        except Exception:
            logger.warning(
                "Artifact write failed for checkpoint %s, deleting checkpoint", checkpoint_id
            )
            try:
                await self.history.delete_checkpoint(checkpoint_id)
            except Exception:
                logger.exception("Failed to delete orphaned checkpoint %s", checkpoint_id)
            raise

        emit(
            CheckpointArtifactWritten(
                checkpoint_id=checkpoint_id,
                provider_id=provider.id,
                path=path,
                size=len(body),
            )
        )
        return CheckpointArtifact(
            checkpoint_id=checkpoint_id,
            provider_id=provider.id,
            path=path,
            size=len(body),
            created_at=datetime.now(UTC),
            reason=reason,
            seed_count=len(seed_entity_ids),
        )

    async def restore(self, checkpoint_id: str, provider_id: str | None = None) -> str:
        """Import a checkpoint from its artifact. Returns the imported id."""
        provider = self.registry.resolve(provider_id)
        raw = await provider.read_file(artifact_path(checkpoint_id))
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as err:
            raise CheckpointJobError(f"Artifact for checkpoint {checkpoint_id} is not valid JSON") from err
        imported_id = await self.history.import_checkpoint(data)
        logger.info("Restored checkpoint %s as %s", checkpoint_id, imported_id)
        return imported_id

    async def list(self, provider_id: str | None = None) -> AsyncIterator[str]:
        """Checkpoint ids that have an artifact on the provider."""
        provider = self.registry.resolve(provider_id)
        async for path in provider.list(ARTIFACT_PREFIX):
            name = path[len(ARTIFACT_PREFIX) :] if path.startswith(ARTIFACT_PREFIX) else path
            if name.endswith(".json") and "/" not in name:
                yield name[: -len(".json")]

    async def stat(
        self, checkpoint_id: str, provider_id: str | None = None
    ) -> BackupFileStat | None:
        provider = self.registry.resolve(provider_id)
        return await provider.stat(artifact_path(checkpoint_id))

    async def delete(
        self,
        checkpoint_id: str,
        provider_id: str | None = None,
        drop_checkpoint: bool = False,
    ) -> None:
        """Remove the artifact, and optionally the checkpoint itself."""
        provider = self.registry.resolve(provider_id)
        await provider.remove_file(artifact_path(checkpoint_id))
        if drop_checkpoint:
            await self.history.delete_checkpoint(checkpoint_id)

    async def exists(self, checkpoint_id: str, provider_id: str | None = None) -> bool:
        provider = self.registry.resolve(provider_id)
        return await provider.exists(artifact_path(checkpoint_id))
