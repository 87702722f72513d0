"""oathsync Pydantic models for type-safe data validation.

Domain shapes shared across the engine plus the typed partial updates
(patches) that are the only way automated code writes to the store.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from oathsync.canonical.values import normalize_timestamp, utcnow

# User-entered fields; automated writes must never touch these.
MANUAL_FIELDS = frozenset(
    {
        "notes",
        "internal_status",
        "evidence_reviewed",
        "evidence_requested",
        "evidence_requested_date",
        "evidence_received",
        "added_to_calendar",
        "is_invoiced",
        "legal_fee_paid",
        "is_new",
    }
)


class ActivityType(str, Enum):
    """Audit entry types for a case record's activity log."""

    CREATED = "CREATED"
    STATUS_CHANGE = "STATUS_CHANGE"
    RESCHEDULE = "RESCHEDULE"
    RESULT_CHANGE = "RESULT_CHANGE"
    AMOUNT_CHANGE = "AMOUNT_CHANGE"
    PAYMENT = "PAYMENT"
    AMENDMENT = "AMENDMENT"
    OCR_COMPLETE = "OCR_COMPLETE"
    ARCHIVED = "ARCHIVED"


class PhaseStatus(str, Enum):
    """Outcome flag recorded per phase on the sync status record."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class Client(BaseModel):
    """Registered client entity (read-only to the engine)."""

    id: str
    name: str
    akas: list[str] = Field(default_factory=list)
    owner: str | None = None

    @field_validator("akas", mode="before")
    @classmethod
    def akas_list(cls, v: Any) -> list[str]:
        """Drop anything that is not a non-empty string."""
        if not v:
            return []
        return [aka for aka in v if isinstance(aka, str) and aka.strip()]

    @property
    def all_names(self) -> list[str]:
        return [self.name, *self.akas]


class ActivityLogEntry(BaseModel):
    """One immutable audit entry."""

    model_config = ConfigDict(frozen=True)

    date: datetime = Field(default_factory=utcnow)
    type: ActivityType
    description: str
    old_value: str | None = None
    new_value: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Shape stored inside the JSON activity_log column."""
        return {
            "date": normalize_timestamp(self.date),
            "type": self.type.value,
            "description": self.description,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


class _Patch(BaseModel):
    """Typed partial update: only explicitly-set fields are written."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    def to_values(self) -> dict[str, Any]:
        """Map the patch onto column values for an UPDATE.

        Raises:
            ValueError: If a user-owned field somehow got into the patch
        """
        values = self.model_dump(exclude_unset=True)
        clobbered = MANUAL_FIELDS.intersection(values)
        if clobbered:
            raise ValueError(f"Refusing automated write to user fields: {sorted(clobbered)}")
        return values

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class SummonsPatch(_Patch):
    """Partial update for a case record."""

    client_id: str | None = None
    respondent_name: str | None = None
    owner: str | None = None

    status: str | None = None
    hearing_result: str | None = None
    hearing_date: str | None = None
    hearing_time: str | None = None

    code_description: str | None = None
    violation_date: str | None = None
    violation_time: str | None = None
    violation_location: str | None = None
    license_plate: str | None = None

    base_fine: Decimal | None = None
    amount_due: Decimal | None = None
    paid_amount: Decimal | None = None
    penalty_imposed: Decimal | None = None

    summons_pdf_link: str | None = None
    video_link: str | None = None

    ocr_status: str | None = None
    ocr_failure_count: int | None = None
    ocr_failure_reason: str | None = None
    last_ocr_failure_at: datetime | None = None
    last_scan_date: datetime | None = None
    last_healing_at: datetime | None = None

    api_miss_count: int | None = None
    is_archived: bool | None = None
    archived_at: datetime | None = None
    archived_reason: str | None = None
    last_metadata_sync: datetime | None = None
    last_change_summary: str | None = None
    last_change_at: datetime | None = None
    updated_at: datetime | None = None

    _activity: list[ActivityLogEntry] = PrivateAttr(default_factory=list)

    def append_activity(self, *entries: ActivityLogEntry) -> SummonsPatch:
        self._activity.extend(entries)
        return self

    @property
    def activity(self) -> list[ActivityLogEntry]:
        return list(self._activity)

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set and not self._activity

    def to_values(self, current_log: list[dict] | None = None) -> dict[str, Any]:
        """Column values, with new activity appended after ``current_log``."""
        values = super().to_values()
        if self._activity:
            values["activity_log"] = list(current_log or []) + [
                entry.to_record() for entry in self._activity
            ]
        return values


class SyncStatusPatch(_Patch):
    """Partial update for the singleton sync status record."""

    last_successful_sync: datetime | None = None
    last_sync_attempt: datetime | None = None
    sync_in_progress: bool | None = None
    sync_run_id: str | None = None
    sync_lock_acquired_at: datetime | None = None

    phase1_status: str | None = None
    phase1_completed_at: datetime | None = None
    phase1_new_records: int | None = None
    phase1_updated_records: int | None = None
    phase1_unchanged_records: int | None = None

    ghost_status: str | None = None
    ghost_warned: int | None = None
    ghost_archived: int | None = None

    phase2_status: str | None = None
    phase2_completed_at: datetime | None = None
    phase2_ocr_processed: int | None = None
    phase2_ocr_remaining: int | None = None
    phase2_ocr_failed: int | None = None

    ocr_processed_today: int | None = None
    ocr_processing_date: date | None = None

    oath_api_reachable: bool | None = None
    oath_api_last_check: datetime | None = None
    oath_api_error: str | None = None

    last_error: str | None = None
