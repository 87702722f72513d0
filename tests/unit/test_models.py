"""Unit tests for oathsync Pydantic models."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from oathsync.models import (
    MANUAL_FIELDS,
    ActivityLogEntry,
    ActivityType,
    Client,
    SummonsPatch,
    SyncStatusPatch,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestClient:
    """Test Client validation."""

    def test_akas_drop_invalid_entries(self):
        """Test non-string and blank akas are filtered out."""
        client = Client(id="c1", name="Acme", akas=["ACME CO", "", "  ", 7])

        assert client.akas == ["ACME CO"]
        assert client.all_names == ["Acme", "ACME CO"]

    def test_akas_default_empty(self):
        """Test missing akas become an empty list."""
        assert Client(id="c1", name="Acme", akas=None).akas == []


class TestActivityLogEntry:
    def test_to_record(self):
        """Test the stored shape uses canonical timestamps and enum values."""
        entry = ActivityLogEntry(
            date=NOW, type=ActivityType.PAYMENT, description="Amount Paid changed",
            old_value="0.00", new_value="350.00",
        )

        assert entry.to_record() == {
            "date": "2026-03-02T12:00:00.000Z",
            "type": "PAYMENT",
            "description": "Amount Paid changed",
            "old_value": "0.00",
            "new_value": "350.00",
        }

    def test_frozen(self):
        """Test entries cannot be edited after creation."""
        entry = ActivityLogEntry(type=ActivityType.CREATED, description="created")

        with pytest.raises(ValidationError):
            entry.description = "edited"


class TestSummonsPatch:
    """Test typed partial updates."""

    def test_only_set_fields_written(self):
        """Test unset fields are not part of the update."""
        patch = SummonsPatch(last_metadata_sync=NOW)
        patch.api_miss_count = 0

        assert patch.to_values() == {"last_metadata_sync": NOW, "api_miss_count": 0}

    def test_explicit_none_is_written(self):
        """Test setting a field to None still writes it."""
        assert SummonsPatch(ocr_failure_reason=None).to_values() == {"ocr_failure_reason": None}

    @pytest.mark.parametrize("field", sorted(MANUAL_FIELDS))
    def test_user_fields_rejected(self, field):
        """Test user-owned fields cannot even be expressed in a patch."""
        with pytest.raises(ValidationError):
            SummonsPatch(**{field: "x"})

    def test_activity_appended_to_existing_log(self):
        """Test new activity entries go after the stored log."""
        existing = [{"type": "CREATED", "description": "created"}]
        patch = SummonsPatch(updated_at=NOW).append_activity(
            ActivityLogEntry(date=NOW, type=ActivityType.STATUS_CHANGE, description="Status changed")
        )

        values = patch.to_values(existing)

        assert values["activity_log"][0] == existing[0]
        assert values["activity_log"][1]["type"] == "STATUS_CHANGE"
        assert len(existing) == 1

    def test_is_empty(self):
        """Test a patch with nothing set (and no activity) is empty."""
        assert SummonsPatch().is_empty
        assert not SummonsPatch(amount_due=Decimal("1")).is_empty
        assert not SummonsPatch().append_activity(
            ActivityLogEntry(type=ActivityType.ARCHIVED, description="x")
        ).is_empty

    def test_assignment_is_validated(self):
        """Test assigning a bad type raises."""
        patch = SummonsPatch()

        with pytest.raises(ValidationError):
            patch.ocr_failure_count = "many"


class TestSyncStatusPatch:
    def test_unknown_field_rejected(self):
        """Test status patches only accept known columns."""
        with pytest.raises(ValidationError):
            SyncStatusPatch(notes="x")

    def test_values(self):
        assert SyncStatusPatch(phase1_status="success").to_values() == {
            "phase1_status": "success"
        }
