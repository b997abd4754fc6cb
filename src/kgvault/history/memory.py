"""In-memory history service for testing without a graph database."""

from __future__ import annotations

import copy
import uuid
from collections import deque
from datetime import UTC, datetime
from typing import Any

from kgvault.history.models import (
    CheckpointInfo,
    CheckpointWindow,
    EntityPage,
    EntitySummary,
    EntityTimeline,
    SessionAnnotation,
    VersionRecord,
)

MAX_HOPS = 5


class InMemoryHistoryService:
    """Full HistoryService implementation using Python dicts.

    Entities, relationships and version records are plain in-process
    state. Checkpoints deep-copy their member entities and the
    relationships between them, so later mutation never leaks into a
    snapshot.
    """

    def __init__(self) -> None:
        self._entities: dict[str, EntitySummary] = {}
        self._relationships: list[dict[str, Any]] = []
        self._versions: dict[str, dict[str, VersionRecord]] = {}
        self._checkpoints: dict[str, dict[str, Any]] = {}
        self.annotations: list[SessionAnnotation] = []

    # -------------------------------------------------------------------------
    # Graph content
    # -------------------------------------------------------------------------

    def add_entity(self, entity_id: str, type: str | None = None, name: str | None = None) -> None:
        self._entities[entity_id] = EntitySummary(id=entity_id, type=type, name=name)

    def add_relationship(self, from_id: str, to_id: str, type: str = "RELATES_TO") -> None:
        self._relationships.append({"from_id": from_id, "to_id": to_id, "type": type})

    def record_version(
        self,
        entity_id: str,
        version_id: str,
        timestamp: datetime | None = None,
        previous_version_id: str | None = None,
        *,
        link_previous: bool = True,
    ) -> VersionRecord:
        """Append a version.

        With ``link_previous`` and no explicit ``previous_version_id``, the
        version links to the latest earlier version of the entity.
        """
        if entity_id not in self._entities:
            self.add_entity(entity_id)
        timestamp = timestamp or datetime.now(UTC)
        versions = self._versions.setdefault(entity_id, {})
        if previous_version_id is None and link_previous:
            earlier = [v for v in versions.values() if v.timestamp < timestamp]
            if earlier:
                previous_version_id = max(earlier, key=lambda v: v.timestamp).version_id
        record = VersionRecord(
            entity_id=entity_id,
            version_id=version_id,
            timestamp=timestamp,
            previous_version_id=previous_version_id,
        )
        versions[version_id] = record
        return record

    def clear_previous_link(self, entity_id: str, version_id: str) -> None:
        self._versions[entity_id][version_id].previous_version_id = None

    # -------------------------------------------------------------------------
    # Version chains
    # -------------------------------------------------------------------------

    async def get_entity_timeline(self, entity_id: str, limit: int = 200) -> EntityTimeline:
        versions = sorted(
            self._versions.get(entity_id, {}).values(),
            key=lambda v: v.timestamp,
            reverse=True,
        )
        return EntityTimeline(
            entity_id=entity_id,
            versions=[copy.copy(v) for v in versions[: max(1, limit)]],
        )

    async def repair_previous_version_link(
        self,
        entity_id: str,
        version_id: str,
        previous_version_id: str,
        timestamp: datetime | None = None,
    ) -> bool:
        versions = self._versions.get(entity_id, {})
        if version_id not in versions or previous_version_id not in versions:
            return False
        versions[version_id].previous_version_id = previous_version_id
        return True

    async def list_entities(self, limit: int = 25, offset: int = 0) -> EntityPage:
        ids = sorted(set(self._entities) | set(self._versions))
        window = ids[offset : offset + limit]
        items = [self._entities.get(eid) or EntitySummary(id=eid) for eid in window]
        return EntityPage(items=items, total=len(ids))

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def _neighborhood(self, seeds: list[str], hops: int) -> list[str]:
        adjacency: dict[str, set[str]] = {}
        for rel in self._relationships:
            adjacency.setdefault(rel["from_id"], set()).add(rel["to_id"])
            adjacency.setdefault(rel["to_id"], set()).add(rel["from_id"])

        seen = {s for s in seeds if s in self._entities}
        frontier = deque((s, 0) for s in seen)
        while frontier:
            node, depth = frontier.popleft()
            if depth >= hops:
                continue
            for neighbor in adjacency.get(node, ()):
                if neighbor not in seen and neighbor in self._entities:
                    seen.add(neighbor)
                    frontier.append((neighbor, depth + 1))
        return sorted(seen)

    async def create_checkpoint(
        self,
        seed_entity_ids: list[str],
        reason: str = "manual",
        hop_count: int = 2,
        window: CheckpointWindow | None = None,
    ) -> str:
        checkpoint_id = f"chk_{uuid.uuid4().hex[:12]}"
        hops = min(max(1, hop_count), MAX_HOPS)
        members = self._neighborhood(list(seed_entity_ids), hops)
        member_set = set(members)
        self._checkpoints[checkpoint_id] = {
            "info": CheckpointInfo(
                id=checkpoint_id,
                timestamp=datetime.now(UTC),
                reason=reason,
                seed_entity_ids=list(seed_entity_ids),
                member_count=len(members),
                hop_count=hops,
                metadata={"window": window.to_dict()} if window else {},
            ),
            "entities": [copy.deepcopy(self._entities[m]) for m in members],
            "relationships": [
                copy.deepcopy(r)
                for r in self._relationships
                if r["from_id"] in member_set and r["to_id"] in member_set
            ],
        }
        return checkpoint_id

    async def get_checkpoint(self, checkpoint_id: str) -> CheckpointInfo | None:
        checkpoint = self._checkpoints.get(checkpoint_id)
        return copy.deepcopy(checkpoint["info"]) if checkpoint else None

    async def list_checkpoints(self) -> list[CheckpointInfo]:
        return [copy.deepcopy(cp["info"]) for cp in self._checkpoints.values()]

    async def export_checkpoint(self, checkpoint_id: str) -> dict[str, Any] | None:
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            return None
        info: CheckpointInfo = checkpoint["info"]
        return {
            "checkpoint": {
                "id": info.id,
                "timestamp": info.timestamp.isoformat(),
                "reason": info.reason,
                "seed_entity_ids": list(info.seed_entity_ids),
                "member_count": info.member_count,
                "hop_count": info.hop_count,
                "metadata": copy.deepcopy(info.metadata),
            },
            "entities": [
                {"id": e.id, "type": e.type, "name": e.name} for e in checkpoint["entities"]
            ],
            "relationships": copy.deepcopy(checkpoint["relationships"]),
        }

    async def import_checkpoint(self, data: dict[str, Any]) -> str:
        try:
            source = data["checkpoint"]
            entities = data.get("entities") or []
            relationships = data.get("relationships") or []
        except (KeyError, TypeError) as err:
            raise ValueError("Checkpoint export is missing the 'checkpoint' section") from err

        for entity in entities:
            self.add_entity(entity["id"], type=entity.get("type"), name=entity.get("name"))
        for rel in relationships:
            if rel not in self._relationships:
                self._relationships.append(dict(rel))

        checkpoint_id = f"imported_{uuid.uuid4().hex[:12]}"
        timestamp = source.get("timestamp")
        self._checkpoints[checkpoint_id] = {
            "info": CheckpointInfo(
                id=checkpoint_id,
                timestamp=(
                    datetime.fromisoformat(timestamp)
                    if isinstance(timestamp, str)
                    else datetime.now(UTC)
                ),
                reason=source.get("reason", "manual"),
                seed_entity_ids=list(source.get("seed_entity_ids") or []),
                member_count=len(entities),
                hop_count=int(source.get("hop_count") or 2),
                metadata={**(source.get("metadata") or {}), "imported_from": source.get("id")},
            ),
            "entities": [
                EntitySummary(id=e["id"], type=e.get("type"), name=e.get("name"))
                for e in entities
            ],
            "relationships": [dict(r) for r in relationships],
        }
        return checkpoint_id

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        self._checkpoints.pop(checkpoint_id, None)

    async def annotate_session_checkpoint(
        self,
        session_id: str,
        seed_entity_ids: list[str],
        status: str,
        checkpoint_id: str | None = None,
        **details: Any,
    ) -> None:
        self.annotations.append(
            SessionAnnotation(
                session_id=session_id,
                seed_entity_ids=list(seed_entity_ids),
                status=status,
                checkpoint_id=checkpoint_id,
                details=dict(details),
                timestamp=datetime.now(UTC),
            )
        )
