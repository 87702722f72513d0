"""Diff engine: stored case record vs freshly fetched source record.

Only the monitored fields are compared, each after normalization
(amounts to 2 decimals, timestamps to canonical UTC form, text with
None == ""). Every differing field yields one summary fragment and one
activity log entry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from oathsync.canonical.values import (
    format_amount,
    normalize_text,
    normalize_timestamp,
    to_amount,
    utcnow,
)
from oathsync.models import ActivityLogEntry, ActivityType
from oathsync.pipeline.types import SourceRecord


@dataclass(frozen=True)
class MonitoredField:
    name: str
    label: str
    activity: ActivityType
    kind: str  # text | amount | timestamp

    def normalize(self, value: Any) -> Any:
        if self.kind == "amount":
            return to_amount(value)
        if self.kind == "timestamp":
            return normalize_timestamp(value)
        return normalize_text(value)

    def display(self, value: Any) -> str:
        if self.kind == "amount":
            return format_amount(value)
        if self.kind == "timestamp":
            return value[:10] if value else "none"
        return f"'{value or ''}'"


MONITORED_FIELDS: tuple[MonitoredField, ...] = (
    MonitoredField("status", "Status", ActivityType.STATUS_CHANGE, "text"),
    MonitoredField("hearing_result", "Hearing Result", ActivityType.RESULT_CHANGE, "text"),
    MonitoredField("hearing_date", "Hearing Date", ActivityType.RESCHEDULE, "timestamp"),
    MonitoredField("hearing_time", "Hearing Time", ActivityType.RESCHEDULE, "text"),
    MonitoredField("amount_due", "Amount Due", ActivityType.AMOUNT_CHANGE, "amount"),
    MonitoredField("paid_amount", "Amount Paid", ActivityType.PAYMENT, "amount"),
    MonitoredField("code_description", "Violation", ActivityType.AMENDMENT, "text"),
)

SUMMARY_SEPARATOR = "; "


@dataclass
class FieldChange:
    field: MonitoredField
    old: Any
    new: Any

    @property
    def fragment(self) -> str:
        return f"{self.field.label}: {self.field.display(self.old)} → {self.field.display(self.new)}"

    def to_activity(self, when: datetime) -> ActivityLogEntry:
        return ActivityLogEntry(
            date=when,
            type=self.field.activity,
            description=f"{self.field.label} changed",
            old_value=None if self.old is None else str(self.old),
            new_value=None if self.new is None else str(self.new),
        )


@dataclass
class DiffResult:
    changes: list[FieldChange] = field(default_factory=list)
    activity_entries: list[ActivityLogEntry] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def summary(self) -> str:
        return SUMMARY_SEPARATOR.join(change.fragment for change in self.changes)

    @property
    def values(self) -> dict[str, Any]:
        """Normalized new values of the changed fields, keyed by column."""
        return {change.field.name: change.new for change in self.changes}


def incoming_values(record: SourceRecord) -> dict[str, Any]:
    """Normalized monitored values of a source record."""
    return {f.name: f.normalize(getattr(record, f.name, None)) for f in MONITORED_FIELDS}


def compute_diff(
    existing: Any,
    incoming: SourceRecord,
    now: datetime | None = None,
) -> DiffResult:
    """Compare a stored record against a source record.

    Args:
        existing: Stored record (ORM row or any attribute holder)
        incoming: Source record
        now: Timestamp for generated activity entries

    Returns:
        DiffResult; ``has_changes`` is False when every monitored field
        is equal after normalization
    """
    now = now or utcnow()
    result = DiffResult()
    new_values = incoming_values(incoming)

    for monitored in MONITORED_FIELDS:
        old = monitored.normalize(getattr(existing, monitored.name, None))
        new = new_values[monitored.name]
        if old == new:
            continue
        change = FieldChange(monitored, old, new)
        result.changes.append(change)
        result.activity_entries.append(change.to_activity(now))

    return result
