"""OCR state of a case record, derived from stored fields.

Storage keeps the loose pair (ocr_status, ocr_failure_count); this module
turns it into a closed set of states at read time:

- Pending: eligible for the enrichment queue
- Complete: enrichment done (or narrative already present)
- Excluded(reason): never scheduled (archived, or failure cap reached)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

OCR_PENDING = "pending"
OCR_COMPLETE = "complete"
LEGACY_PENDING_STATUSES = frozenset({"pending", "failed"})


class OcrState(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    EXCLUDED = "excluded"


@dataclass(frozen=True, slots=True)
class OcrStatus:
    state: OcrState
    reason: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.state is OcrState.PENDING


def _filled(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def has_narrative(record: Any) -> bool:
    """Record already carries extracted narrative text."""
    return _filled(getattr(record, "violation_narrative", None))


def needs_healing(record: Any) -> bool:
    """Narrative present but a derived field is missing, and no repair tried yet."""
    if not has_narrative(record):
        return False
    if getattr(record, "last_healing_at", None) is not None:
        return False
    return not _filled(getattr(record, "id_number", None)) or not _filled(
        getattr(record, "license_plate_ocr", None)
    )


def classify(record: Any, max_failures: int) -> OcrStatus:
    """Compute the OCR state for a stored record.

    Args:
        record: Anything with the summons enrichment attributes
        max_failures: Failure cap; at or above it the record is excluded

    Returns:
        OcrStatus
    """
    if getattr(record, "is_archived", False):
        return OcrStatus(OcrState.EXCLUDED, "archived")

    stored = (getattr(record, "ocr_status", None) or "").strip().lower()

    if needs_healing(record):
        pending = True
    elif stored in LEGACY_PENDING_STATUSES:
        pending = True
    elif not stored:
        # Legacy rows predating ocr_status
        pending = not has_narrative(record)
    else:
        pending = False

    if not pending:
        return OcrStatus(OcrState.COMPLETE)

    failures = getattr(record, "ocr_failure_count", None) or 0
    if failures >= max_failures:
        return OcrStatus(OcrState.EXCLUDED, f"failure cap reached ({failures}/{max_failures})")

    return OcrStatus(OcrState.PENDING)
