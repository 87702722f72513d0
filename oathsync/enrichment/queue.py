"""Enrichment queue processor.

Selects pending records, drops those at the failure cap, orders the rest
by priority score and works through as many as today's quota allows.
Calls are strictly sequential with a fixed delay between consecutive
worker invocations.

Per record:
- narrative already present (and not a healing candidate): mark complete
  without calling the worker
- success: ocr_status=complete, last_scan_date stamped, failure count
  reset (healing runs keep it)
- failure: ocr_failure_count + 1, reason and timestamp recorded, status
  left as is
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.canonical.values import parse_timestamp, utcnow
from oathsync.config import EnrichmentConfig
from oathsync.db.repository import SummonsRepository
from oathsync.enrichment.priority import calculate_priority
from oathsync.enrichment.quota import QuotaTracker
from oathsync.enrichment.state import OCR_COMPLETE, OcrState, classify, has_narrative, needs_healing
from oathsync.errors import EnrichmentInvocationError
from oathsync.integration.enrichment_client import (
    EnrichmentClient,
    EnrichmentRequest,
    EnrichmentResponse,
)
from oathsync.models import ActivityLogEntry, ActivityType, PhaseStatus, SummonsPatch
from oathsync.pipeline.types import EnrichmentResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueEntry:
    record_id: str
    summons_number: str
    score: int
    healing: bool
    hearing_date: str | None = None
    failure_count: int = 0


class EnrichmentQueueProcessor:
    """Budgeted, throttled, sequential OCR scheduling."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: EnrichmentClient | None,
        quota: QuotaTracker,
        config: EnrichmentConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.client = client
        self.quota = quota
        self.config = config
        self.sleep = sleep
        self.clock = clock

    async def build_queue(self, result: EnrichmentResult | None = None) -> list[QueueEntry]:
        """Eligible records, lowest score first.

        Ties keep summons_number order so the queue is stable run to run.
        """
        result = result or EnrichmentResult()
        now = self.clock()
        floor = self.config.hearing_date_floor

        async with self.session_factory() as session:
            candidates = await SummonsRepository(session).list_enrichment_candidates()

        result.candidates = len(candidates)
        queue: list[QueueEntry] = []

        for record in candidates:
            state = classify(record, self.config.max_failures)
            if state.state is OcrState.EXCLUDED:
                # Candidates are never archived, so this is the failure cap
                result.excluded_by_cap += 1
                continue
            if not state.is_pending:
                continue

            if floor is not None:
                hearing = parse_timestamp(record.hearing_date)
                if hearing is not None and hearing.date() < floor:
                    result.excluded_by_date += 1
                    continue

            queue.append(
                QueueEntry(
                    record_id=record.id,
                    summons_number=record.summons_number,
                    score=calculate_priority(record, now),
                    healing=needs_healing(record),
                    hearing_date=record.hearing_date,
                    failure_count=record.ocr_failure_count or 0,
                )
            )

        queue.sort(key=lambda entry: (entry.score, entry.summons_number))
        return queue

    async def run(self) -> EnrichmentResult:
        """Process today's share of the queue.

        Returns:
            EnrichmentResult counters
        """
        result = EnrichmentResult()
        if self.client is None:
            result.status = PhaseStatus.SKIPPED
            return result

        remaining = await self.quota.remaining()
        result.quota_remaining_start = remaining

        queue = await self.build_queue(result)
        selected = queue[:remaining]
        result.selected = len(selected)

        logger.info(
            f"Enrichment queue: {len(queue)} eligible, {result.excluded_by_cap} at failure cap, "
            f"{remaining} quota remaining, processing {len(selected)}"
        )

        for entry in selected:
            if result.attempted > 0 and self.config.throttle_seconds > 0:
                await self.sleep(self.config.throttle_seconds)
            try:
                await self._process(entry, result)
            except SQLAlchemyError as e:
                result.errors += 1
                logger.error(
                    f"Failed to record OCR outcome for {entry.summons_number}: {e}",
                    exc_info=True,
                )

        result.quota_remaining_end = await self.quota.remaining()
        if result.failed or result.errors:
            result.status = PhaseStatus.PARTIAL

        logger.info(
            f"Enrichment complete: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.skipped} skipped, {result.quota_remaining_end} quota left"
        )
        return result

    async def _process(self, entry: QueueEntry, result: EnrichmentResult) -> None:
        async with self.session_factory() as session:
            repo = SummonsRepository(session)
            record = await repo.get(entry.record_id)
            if record is None:
                return

            healing = needs_healing(record)
            if has_narrative(record) and not healing:
                # Never re-submit a record that already has OCR data
                await repo.apply_patch(record, SummonsPatch(ocr_status=OCR_COMPLETE))
                await session.commit()
                result.skipped += 1
                logger.info(f"Skipped {record.summons_number}: OCR data already present")
                return

            request = EnrichmentRequest(
                record_id=record.id,
                ticket_number=record.summons_number,
                document_link=record.summons_pdf_link,
                video_link=record.video_link,
                violation_date=record.violation_date,
                healing_mode=healing,
            )

        response, reason = await self._invoke(request, result)
        now = self.clock()

        # The worker writes OCR fields itself; re-read before patching.
        async with self.session_factory() as session:
            repo = SummonsRepository(session)
            record = await repo.get(entry.record_id)
            if record is None:
                return

            if response is not None and response.succeeded:
                patch = SummonsPatch(ocr_status=OCR_COMPLETE, last_scan_date=now)
                if healing:
                    patch.last_healing_at = now
                    result.healed += 1
                else:
                    patch.ocr_failure_count = 0
                if response.has_ocr_data:
                    patch.updated_at = now
                    patch.append_activity(
                        ActivityLogEntry(
                            date=now,
                            type=ActivityType.OCR_COMPLETE,
                            description="Healing re-extraction completed"
                            if healing
                            else "Document text extracted",
                        )
                    )
                result.succeeded += 1
                logger.info(f"OCR complete for {record.summons_number}")
            else:
                failures = (record.ocr_failure_count or 0) + 1
                patch = SummonsPatch(
                    ocr_failure_count=failures,
                    ocr_failure_reason=reason,
                    last_ocr_failure_at=now,
                )
                if healing:
                    patch.last_healing_at = now
                result.failed += 1
                logger.warning(
                    f"OCR failed for {record.summons_number} "
                    f"({failures}/{self.config.max_failures}): {reason}"
                )

            await repo.apply_patch(record, patch)
            await session.commit()

    async def _invoke(
        self, request: EnrichmentRequest, result: EnrichmentResult
    ) -> tuple[EnrichmentResponse | None, str | None]:
        """Call the worker; only calls that got an answer consume quota."""
        result.attempted += 1
        try:
            response = await self.client.invoke(request)
        except EnrichmentInvocationError as e:
            if e.responded:
                await self.quota.consume()
            return None, str(e)

        await self.quota.consume()
        return response, None if response.succeeded else response.failure_reason
