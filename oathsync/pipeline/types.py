"""Type definitions for pipeline operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional

from oathsync.models import PhaseStatus


@dataclass
class SourceRecord:
    """Normalized summons row from the source dataset.

    This is the canonical format the fetcher produces; the diff engine
    and metadata sync only ever see this shape.
    """

    # Business key
    summons_number: str

    # Respondent (split the way the source splits it)
    respondent_first_name: str = ""
    respondent_last_name: str = ""

    # Hearing
    status: str = "Unknown"
    hearing_result: Optional[str] = None
    hearing_date: Optional[str] = None
    hearing_time: Optional[str] = None

    # Violation
    code_description: Optional[str] = None
    violation_date: Optional[str] = None
    violation_time: Optional[str] = None
    violation_location: Optional[str] = None
    license_plate: Optional[str] = None

    # Financial
    base_fine: Decimal = Decimal("0.00")
    amount_due: Decimal = Decimal("0.00")
    paid_amount: Decimal = Decimal("0.00")
    penalty_imposed: Decimal = Decimal("0.00")

    # Document links
    summons_pdf_link: Optional[str] = None
    video_link: Optional[str] = None

    raw: dict = field(default_factory=dict, repr=False)

    @property
    def respondent_name(self) -> str:
        return f"{self.respondent_first_name} {self.respondent_last_name}".strip()


@dataclass
class FetchResult:
    """Merged output of all source queries for one run."""

    records: list[SourceRecord] = field(default_factory=list)
    terms: list[str] = field(default_factory=list)
    queries: int = 0
    failed_terms: list[str] = field(default_factory=list)
    truncated_terms: list[str] = field(default_factory=list)
    rows_seen: int = 0
    duplicates: int = 0
    filtered_out: int = 0

    @property
    def complete(self) -> bool:
        """Every query succeeded and was read to its last page.

        Only then does absence from the result mean something.
        """
        return not self.failed_terms and not self.truncated_terms

    @property
    def observed_numbers(self) -> set[str]:
        return {record.summons_number for record in self.records}

    @property
    def source_down(self) -> bool:
        """Every query failed."""
        return self.queries > 0 and len(self.failed_terms) >= self.queries


@dataclass
class MetadataSyncResult:
    """Counters from the metadata sync phase."""

    clients_processed: int = 0
    source_records: int = 0
    matched: int = 0
    unmatched: int = 0
    skipped_empty: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    enrichment_flagged: int = 0
    archived_skipped: int = 0
    errors: int = 0
    status: PhaseStatus = PhaseStatus.SUCCESS


@dataclass
class GhostResult:
    """Counters from ghost detection."""

    scanned: int = 0
    observed: int = 0
    warned: int = 0
    archived: int = 0
    errors: int = 0
    status: PhaseStatus = PhaseStatus.SUCCESS


@dataclass
class EnrichmentResult:
    """Counters from the enrichment queue."""

    candidates: int = 0
    excluded_by_cap: int = 0
    excluded_by_date: int = 0
    quota_remaining_start: int = 0
    quota_remaining_end: int = 0
    selected: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    healed: int = 0
    errors: int = 0
    status: PhaseStatus = PhaseStatus.SUCCESS


@dataclass
class SyncSummary:
    """Machine-readable result of one engine invocation."""

    run_id: str
    success: bool = True
    status_code: int = 200
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: float = 0.0
    clients: int = 0
    fetch: Optional[FetchResult] = None
    metadata: Optional[MetadataSyncResult] = None
    ghost: Optional[GhostResult] = None
    enrichment: Optional[EnrichmentResult] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Flatten into JSON-friendly primitives."""
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "success": self.success,
            "status_code": self.status_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "clients": self.clients,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }
        if self.fetch is not None:
            data["fetch"] = {
                "terms": len(self.fetch.terms),
                "failed_terms": list(self.fetch.failed_terms),
                "truncated_terms": list(self.fetch.truncated_terms),
                "rows_seen": self.fetch.rows_seen,
                "unique_records": len(self.fetch.records),
                "duplicates": self.fetch.duplicates,
                "filtered_out": self.fetch.filtered_out,
            }
        for name in ("metadata", "ghost", "enrichment"):
            phase = getattr(self, name)
            if phase is not None:
                values = asdict(phase)
                values["status"] = phase.status.value
                data[name] = values
        return data
