"""Version-chain integrity for entity history."""

from kgvault.temporal.validator import (
    TemporalHistoryValidator,
    TemporalIssueType,
    TemporalValidationIssue,
    TemporalValidationReport,
    inspect_timeline,
)

__all__ = [
    "TemporalHistoryValidator",
    "TemporalIssueType",
    "TemporalValidationIssue",
    "TemporalValidationReport",
    "inspect_timeline",
]
