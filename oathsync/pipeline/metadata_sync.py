"""Metadata sync phase.

Creates and updates case records from fetched source records without
invoking enrichment. Unchanged records get a proof-of-life touch only
(last_metadata_sync), which leaves updated_at alone. Records lacking a
narrative are flagged ocr_status=pending for the enrichment phase.

Each record is committed on its own; a store error on one record is
logged, counted and skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.canonical.values import utcnow
from oathsync.db.models import SummonsModel
from oathsync.db.repository import SummonsRepository
from oathsync.enrichment.state import OCR_PENDING, has_narrative
from oathsync.matching.resolver import EntityResolver
from oathsync.models import ActivityLogEntry, ActivityType, Client, PhaseStatus, SummonsPatch
from oathsync.pipeline.diff import compute_diff, incoming_values
from oathsync.pipeline.types import MetadataSyncResult, SourceRecord

logger = logging.getLogger(__name__)


class MetadataSyncPhase:
    """Fetch result + resolver + diff engine -> case record writes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def run(
        self,
        records: list[SourceRecord],
        resolver: EntityResolver,
        clients_processed: int = 0,
    ) -> MetadataSyncResult:
        """Process fetched records.

        Args:
            records: Deduplicated source records
            resolver: Entity resolver built for this run
            clients_processed: Size of the client roster (reported only)

        Returns:
            MetadataSyncResult with per-outcome counters
        """
        stats = MetadataSyncResult(
            clients_processed=clients_processed,
            source_records=len(records),
        )
        logger.info(f"Metadata sync: {len(records)} source records")

        async with self.session_factory() as session:
            repo = SummonsRepository(session)

            for record in records:
                if not record.respondent_name:
                    stats.skipped_empty += 1
                    continue

                match = resolver.resolve_match(
                    record.respondent_first_name, record.respondent_last_name
                )
                if match is None:
                    stats.unmatched += 1
                    continue
                stats.matched += 1

                try:
                    await self._sync_record(repo, record, match.client, stats)
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    stats.errors += 1
                    logger.error(
                        f"Failed to sync summons {record.summons_number}: {e}",
                        exc_info=True,
                    )

        if stats.errors:
            stats.status = PhaseStatus.PARTIAL

        logger.info(
            f"Metadata sync complete: {stats.created} new, {stats.updated} updated, "
            f"{stats.unchanged} unchanged, {stats.enrichment_flagged} flagged for OCR, "
            f"{stats.unmatched} unmatched, {stats.errors} errors"
        )
        return stats

    async def _sync_record(
        self,
        repo: SummonsRepository,
        record: SourceRecord,
        client: Client,
        stats: MetadataSyncResult,
    ) -> None:
        existing = await repo.get_by_number(record.summons_number)

        if existing is None:
            await repo.create(self._new_record_values(record, client))
            stats.created += 1
            stats.enrichment_flagged += 1
            logger.info(f"Created summons {record.summons_number} for client {client.id}")
            return

        if existing.is_archived:
            # Archiving is terminal; a reappearing record is not reactivated
            stats.archived_skipped += 1
            return

        await self._update_existing(repo, existing, record, stats)

    async def _update_existing(
        self,
        repo: SummonsRepository,
        existing: SummonsModel,
        record: SourceRecord,
        stats: MetadataSyncResult,
    ) -> None:
        now = self.clock()
        diff = compute_diff(existing, record, now)

        patch = SummonsPatch(last_metadata_sync=now)
        if existing.api_miss_count:
            patch.api_miss_count = 0

        if not has_narrative(existing) and (existing.ocr_status or "") != OCR_PENDING:
            patch.ocr_status = OCR_PENDING
            stats.enrichment_flagged += 1

        if diff.has_changes:
            for column, value in diff.values.items():
                setattr(patch, column, value)
            patch.last_change_summary = diff.summary
            patch.last_change_at = now
            patch.updated_at = now
            patch.append_activity(*diff.activity_entries)
            stats.updated += 1
            logger.info(f"Updated summons {record.summons_number}: {diff.summary}")
        else:
            stats.unchanged += 1

        await repo.apply_patch(existing, patch)

    def _new_record_values(self, record: SourceRecord, client: Client) -> dict[str, Any]:
        now = self.clock()
        created = ActivityLogEntry(
            date=now,
            type=ActivityType.CREATED,
            description="Summons discovered in OATH dataset",
            new_value=record.status,
        )
        values: dict[str, Any] = {
            "summons_number": record.summons_number,
            "client_id": client.id,
            "owner": client.owner,
            "respondent_name": record.respondent_name,
            "violation_date": record.violation_date,
            "violation_time": record.violation_time,
            "violation_location": record.violation_location,
            "license_plate": record.license_plate,
            "base_fine": record.base_fine,
            "penalty_imposed": record.penalty_imposed,
            "summons_pdf_link": record.summons_pdf_link,
            "video_link": record.video_link,
            "ocr_status": OCR_PENDING,
            "ocr_failure_count": 0,
            "api_miss_count": 0,
            "is_archived": False,
            "last_metadata_sync": now,
            "activity_log": [created.to_record()],
            "created_at": now,
            "updated_at": now,
        }
        values.update(incoming_values(record))
        return values
