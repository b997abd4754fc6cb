"""Version-chain validation and repair.

Each entity's versions form a chain: sorted by timestamp, every version's
``previous_version_id`` names the version before it. The validator pages
through entities, inspects a window of each timeline, reports breaks and,
when asked, relinks versions whose previous link is missing.

Only ``missing_previous`` is repaired automatically. Misordered links and
unexpected heads are reported with ``repaired=None``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from kgvault.config import (
    MAX_TIMELINE_LIMIT,
    MAX_VALIDATOR_BATCH_SIZE,
    ValidatorConfig,
    clamp,
)
from kgvault.history.base import HistoryService
from kgvault.history.models import VersionRecord
from kgvault.observability import emit
from kgvault.observability.events import TemporalLinkRepaired, TemporalValidationCompleted

logger = logging.getLogger(__name__)


class TemporalIssueType(str, Enum):
    MISSING_PREVIOUS = "missing_previous"
    MISORDERED_PREVIOUS = "misordered_previous"
    UNEXPECTED_HEAD = "unexpected_head"


@dataclass
class TemporalValidationIssue:
    entity_id: str
    version_id: str
    type: TemporalIssueType
    message: str
    expected_previous_id: str | None = None
    actual_previous_id: str | None = None
    repaired: bool | None = None  # None: not attempted


@dataclass
class TemporalValidationReport:
    scanned_entities: int = 0
    inspected_versions: int = 0
    repaired_links: int = 0
    issues: list[TemporalValidationIssue] = field(default_factory=list)
    failed_entities: list[str] = field(default_factory=list)
    next_offset: int = 0
    completed: bool = False

    @property
    def unresolved_issues(self) -> list[TemporalValidationIssue]:
        return [issue for issue in self.issues if issue.repaired is not True]


def inspect_timeline(
    entity_id: str,
    versions: Sequence[VersionRecord],
    limit: int,
) -> list[TemporalValidationIssue]:
    """Chain issues in one timeline window. Pure; does not repair.

    The earliest version may only be checked for a dangling previous link
    when the window holds the whole history (fewer versions than ``limit``).
    A link to a version with a later timestamp is reported as clock skew
    and kept out of the adjacency checks, so no repair can close a cycle.
    """
    ordered = sorted(versions, key=lambda v: v.timestamp)
    issues: list[TemporalValidationIssue] = []
    if not ordered:
        return issues

    by_id = {v.version_id: v for v in ordered}
    skewed: set[str] = set()
    for version in ordered:
        previous = by_id.get(version.previous_version_id or "")
        if previous is not None and previous.timestamp > version.timestamp:
            skewed.add(version.version_id)
            issues.append(
                TemporalValidationIssue(
                    entity_id=entity_id,
                    version_id=version.version_id,
                    type=TemporalIssueType.MISORDERED_PREVIOUS,
                    message=(
                        f"Version {version.version_id} is timestamped before its "
                        f"previous version {previous.version_id}"
                    ),
                    actual_previous_id=previous.version_id,
                )
            )

    head = ordered[0]
    if len(ordered) < limit and head.previous_version_id and head.version_id not in skewed:
        issues.append(
            TemporalValidationIssue(
                entity_id=entity_id,
                version_id=head.version_id,
                type=TemporalIssueType.UNEXPECTED_HEAD,
                message=(
                    f"Earliest version {head.version_id} points to "
                    f"{head.previous_version_id}, which is not in the history"
                ),
                actual_previous_id=head.previous_version_id,
            )
        )

    for prior, current in zip(ordered, ordered[1:]):
        if current.version_id in skewed or prior.previous_version_id == current.version_id:
            continue
        expected = prior.version_id
        actual = current.previous_version_id
        if not actual:
            issues.append(
                TemporalValidationIssue(
                    entity_id=entity_id,
                    version_id=current.version_id,
                    type=TemporalIssueType.MISSING_PREVIOUS,
                    message=f"Version {current.version_id} has no previous link; expected {expected}",
                    expected_previous_id=expected,
                )
            )
        elif actual != expected:
            issues.append(
                TemporalValidationIssue(
                    entity_id=entity_id,
                    version_id=current.version_id,
                    type=TemporalIssueType.MISORDERED_PREVIOUS,
                    message=(
                        f"Version {current.version_id} points to {actual}; expected {expected}"
                    ),
                    expected_previous_id=expected,
                    actual_previous_id=actual,
                )
            )
    return issues


class TemporalHistoryValidator:
    """Scan entity timelines for broken version chains."""

    def __init__(self, history: HistoryService, config: ValidatorConfig | None = None):
        self.history = history
        self.config = config or ValidatorConfig()

    async def validate_entity(
        self,
        entity_id: str,
        *,
        auto_repair: bool | None = None,
        dry_run: bool | None = None,
        timeline_limit: int | None = None,
    ) -> tuple[int, list[TemporalValidationIssue], int]:
        """Inspect one entity. Returns (versions inspected, issues, links repaired)."""
        limit = clamp(timeline_limit or self.config.timeline_limit, 1, MAX_TIMELINE_LIMIT)
        repair = self.config.auto_repair if auto_repair is None else auto_repair
        dry = self.config.dry_run if dry_run is None else dry_run

        timeline = await self.history.get_entity_timeline(entity_id, limit=limit)
        versions = list(timeline.versions)
        issues = inspect_timeline(entity_id, versions, limit)

        repaired = 0
        if repair and not dry:
            by_id = {v.version_id: v for v in versions}
            for issue in issues:
                if issue.type is not TemporalIssueType.MISSING_PREVIOUS:
                    continue
                repaired += await self._repair(issue, by_id.get(issue.version_id))
        return len(versions), issues, repaired

    async def _repair(
        self, issue: TemporalValidationIssue, version: VersionRecord | None
    ) -> int:
        if issue.expected_previous_id is None:
            return 0
        try:
            ok = await self.history.repair_previous_version_link(
                issue.entity_id,
                issue.version_id,
                issue.expected_previous_id,
                timestamp=version.timestamp if version else None,
            )
        except Exception:
            logger.exception(
                "Failed to repair previous link of %s/%s", issue.entity_id, issue.version_id
            )
            ok = False
        issue.repaired = bool(ok)
        emit(
            TemporalLinkRepaired(
                entity_id=issue.entity_id,
                version_id=issue.version_id,
                previous_version_id=issue.expected_previous_id,
                success=issue.repaired,
            )
        )
        return 1 if issue.repaired else 0

    async def validate(
        self,
        *,
        auto_repair: bool | None = None,
        dry_run: bool | None = None,
        batch_size: int | None = None,
        timeline_limit: int | None = None,
        max_entities: int | None = None,
        offset: int = 0,
    ) -> TemporalValidationReport:
        """Page through all entities and validate each timeline.

        ``max_entities`` stops the scan early with counts accurate to that
        point; resume with ``offset=report.next_offset``.
        """
        batch = clamp(batch_size or self.config.batch_size, 1, MAX_VALIDATOR_BATCH_SIZE)
        report = TemporalValidationReport(next_offset=max(0, offset))
        started = time.monotonic()

        while True:
            page = await self.history.list_entities(limit=batch, offset=report.next_offset)
            if not page.items:
                report.completed = True
                break

            for entity in page.items:
                if max_entities is not None and report.scanned_entities >= max_entities:
                    return self._finish(report, started)
                report.next_offset += 1
                report.scanned_entities += 1
                try:
                    inspected, issues, repaired = await self.validate_entity(
                        entity.id,
                        auto_repair=auto_repair,
                        dry_run=dry_run,
                        timeline_limit=timeline_limit,
                    )
                except Exception:
                    logger.exception("Temporal validation failed for entity %s", entity.id)
                    report.failed_entities.append(entity.id)
                    continue
                report.inspected_versions += inspected
                report.repaired_links += repaired
                report.issues.extend(issues)

            if report.next_offset >= page.total:
                report.completed = True
                break

        return self._finish(report, started)

    def _finish(
        self, report: TemporalValidationReport, started: float
    ) -> TemporalValidationReport:
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Temporal validation scanned %d entities, %d versions: %d issues, %d repaired",
            report.scanned_entities,
            report.inspected_versions,
            len(report.issues),
            report.repaired_links,
        )
        emit(
            TemporalValidationCompleted(
                scanned_entities=report.scanned_entities,
                inspected_versions=report.inspected_versions,
                repaired_links=report.repaired_links,
                issue_count=len(report.issues),
                unresolved_issues=len(report.unresolved_issues),
                completed=report.completed,
                elapsed_ms=elapsed_ms,
            )
        )
        return report
