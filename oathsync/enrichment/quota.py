"""Daily OCR quota tracker.

The counter lives on the sync status record next to the calendar date
(UTC) it belongs to. A date mismatch means a new day: the counter is reset
to zero once, then only ever incremented.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.canonical.values import utcnow
from oathsync.db.repository import SyncStatusRepository
from oathsync.models import SyncStatusPatch

logger = logging.getLogger(__name__)


def utc_today(now: datetime | None = None) -> date:
    return (now or utcnow()).date()


class QuotaTracker:
    """Persisted daily budget for enrichment worker calls."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_daily: int,
        status_id: str = "GLOBAL",
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.max_daily = max_daily
        self.status_id = status_id
        self.clock = clock

    async def used_today(self) -> int:
        """Calls already made today, resetting the counter on a new date."""
        today = utc_today(self.clock())
        async with self.session_factory() as session:
            repo = SyncStatusRepository(session, self.status_id)
            status = await repo.get_or_create()

            if status.ocr_processing_date != today:
                logger.info(
                    f"New processing day {today} (was {status.ocr_processing_date}); "
                    f"resetting OCR counter from {status.ocr_processed_today}"
                )
                await repo.merge(
                    SyncStatusPatch(ocr_processed_today=0, ocr_processing_date=today)
                )
                await session.commit()
                return 0

            return status.ocr_processed_today or 0

    async def remaining(self) -> int:
        return max(0, self.max_daily - await self.used_today())

    async def consume(self, count: int = 1) -> int:
        """Add ``count`` completed calls to today's counter.

        Returns:
            The new counter value
        """
        today = utc_today(self.clock())
        async with self.session_factory() as session:
            repo = SyncStatusRepository(session, self.status_id)
            status = await repo.get_or_create()
            used = status.ocr_processed_today or 0
            if status.ocr_processing_date != today:
                used = 0
            used += count
            await repo.merge(
                SyncStatusPatch(ocr_processed_today=used, ocr_processing_date=today)
            )
            await session.commit()
        return used
