"""SQLAlchemy async database models for oathsync.

Three logical tables: clients (read-only to the engine), summonses (case
records) and sync_status (singleton run metadata). Physical table names
come from CLIENTS_TABLE / SUMMONS_TABLE / SYNC_STATUS_TABLE.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from oathsync.canonical.values import utcnow
from oathsync.config import TablesConfig

TABLES = TablesConfig.from_env()


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ClientModel(Base):
    """Registered client; name and akas feed respondent matching."""

    __tablename__ = TABLES.clients

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    akas: Mapped[list | None] = mapped_column(JSON, default=list)
    owner: Mapped[str | None] = mapped_column(Text, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class SummonsModel(Base):
    """One OATH case tracked for a client.

    updated_at only moves on real changes; the proof-of-life touch writes
    last_metadata_sync alone so created_at == updated_at still means
    "never changed since first sighting".
    """

    __tablename__ = TABLES.summonses

    # Identity
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    summons_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    respondent_name: Mapped[str | None] = mapped_column(Text)
    owner: Mapped[str | None] = mapped_column(Text)

    # Hearing / status
    hearing_date: Mapped[str | None] = mapped_column(Text)  # canonical ISO-8601 UTC
    hearing_time: Mapped[str | None] = mapped_column(Text)
    hearing_result: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(Text)

    # Violation
    code_description: Mapped[str | None] = mapped_column(Text)
    violation_date: Mapped[str | None] = mapped_column(Text)
    violation_time: Mapped[str | None] = mapped_column(Text)
    violation_location: Mapped[str | None] = mapped_column(Text)
    license_plate: Mapped[str | None] = mapped_column(Text)

    # Financial
    base_fine: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    amount_due: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    penalty_imposed: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    # Document links
    summons_pdf_link: Mapped[str | None] = mapped_column(Text)
    video_link: Mapped[str | None] = mapped_column(Text)

    # Enrichment
    ocr_status: Mapped[str | None] = mapped_column(Text, default="pending")
    ocr_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ocr_failure_reason: Mapped[str | None] = mapped_column(Text)
    last_ocr_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_scan_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_healing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    violation_narrative: Mapped[str | None] = mapped_column(Text)
    license_plate_ocr: Mapped[str | None] = mapped_column(Text)
    id_number: Mapped[str | None] = mapped_column(Text)
    vehicle_type_ocr: Mapped[str | None] = mapped_column(Text)
    video_created_date: Mapped[str | None] = mapped_column(Text)

    # Lifecycle bookkeeping
    api_miss_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    archived_reason: Mapped[str | None] = mapped_column(Text)
    last_metadata_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_change_summary: Mapped[str | None] = mapped_column(Text)
    last_change_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    activity_log: Mapped[list | None] = mapped_column(JSON, default=list)

    # User-owned (never written by the engine)
    notes: Mapped[str | None] = mapped_column(Text)
    internal_status: Mapped[str | None] = mapped_column(Text)
    evidence_reviewed: Mapped[bool | None] = mapped_column(Boolean)
    evidence_requested: Mapped[bool | None] = mapped_column(Boolean)
    evidence_requested_date: Mapped[str | None] = mapped_column(Text)
    evidence_received: Mapped[bool | None] = mapped_column(Boolean)
    added_to_calendar: Mapped[bool | None] = mapped_column(Boolean)
    is_invoiced: Mapped[bool | None] = mapped_column(Boolean)
    legal_fee_paid: Mapped[bool | None] = mapped_column(Boolean)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("ocr_failure_count >= 0", name="check_ocr_failure_count_non_negative"),
        CheckConstraint("api_miss_count >= 0", name="check_api_miss_count_non_negative"),
        # Ghost scan and enrichment candidate selection
        Index("idx_summons_archived_ocr", "is_archived", "ocr_status"),
    )


class SyncStatusModel(Base):
    """Singleton run metadata, keyed by SYNC_STATUS_ID."""

    __tablename__ = TABLES.sync_status

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    last_successful_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_in_progress: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_run_id: Mapped[str | None] = mapped_column(Text)
    sync_lock_acquired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Phase 1: metadata sync
    phase1_status: Mapped[str | None] = mapped_column(Text)
    phase1_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    phase1_new_records: Mapped[int | None] = mapped_column(Integer)
    phase1_updated_records: Mapped[int | None] = mapped_column(Integer)
    phase1_unchanged_records: Mapped[int | None] = mapped_column(Integer)

    # Ghost detection
    ghost_status: Mapped[str | None] = mapped_column(Text)
    ghost_warned: Mapped[int | None] = mapped_column(Integer)
    ghost_archived: Mapped[int | None] = mapped_column(Integer)

    # Phase 2: enrichment
    phase2_status: Mapped[str | None] = mapped_column(Text)
    phase2_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    phase2_ocr_processed: Mapped[int | None] = mapped_column(Integer)
    phase2_ocr_remaining: Mapped[int | None] = mapped_column(Integer)
    phase2_ocr_failed: Mapped[int | None] = mapped_column(Integer)

    # Daily quota
    ocr_processed_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ocr_processing_date: Mapped[date | None] = mapped_column(Date)

    # Source health
    oath_api_reachable: Mapped[bool | None] = mapped_column(Boolean)
    oath_api_last_check: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    oath_api_error: Mapped[str | None] = mapped_column(Text)

    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("ocr_processed_today >= 0", name="check_ocr_processed_today_non_negative"),
    )
