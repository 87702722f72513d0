"""Ghost record detection.

A ghost is a stored, non-archived record whose ticket number did not show
up in this run's fetch. Each miss increments api_miss_count; below the
grace period that is only a warning, at the grace period the record is
archived with an inferred reason.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.canonical.values import parse_timestamp, to_amount, utcnow
from oathsync.db.repository import SummonsRepository
from oathsync.models import ActivityLogEntry, ActivityType, PhaseStatus, SummonsPatch
from oathsync.pipeline.types import GhostResult

logger = logging.getLogger(__name__)

REASON_DISMISSED = "Dismissed"
REASON_PAID = "Paid in full"
REASON_HEARING_PASSED = "Hearing date passed; case closed"

# Whole word: UNPAID does not match
PAID_PATTERN = re.compile(r"\bPAID\b")


def infer_archive_reason(record: Any, miss_count: int, now: datetime | None = None) -> str:
    """Best explanation for a record vanishing from the source.

    Checked in order: dismissed, paid in full, hearing in the past,
    then the plain "still missing" fallback.
    """
    now = now or utcnow()
    status = (getattr(record, "status", None) or "").upper()
    result = (getattr(record, "hearing_result", None) or "").upper()

    if "DISMISS" in status or "DISMISS" in result:
        return REASON_DISMISSED

    amount_due = to_amount(getattr(record, "amount_due", None))
    paid = to_amount(getattr(record, "paid_amount", None))
    says_paid = bool(PAID_PATTERN.search(status) or PAID_PATTERN.search(result))
    if amount_due <= 0 and (says_paid or paid > 0):
        return REASON_PAID

    hearing = parse_timestamp(getattr(record, "hearing_date", None))
    if hearing is not None and hearing < now:
        return REASON_HEARING_PASSED

    return f"Missing from source for {miss_count} consecutive runs"


class GhostDetector:
    """Warn, then archive, records that stop appearing in the source."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        grace_period: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.grace_period = grace_period
        self.clock = clock

    async def run(self, observed: set[str]) -> GhostResult:
        """Scan non-archived records against the observed ticket numbers.

        Args:
            observed: Every ticket number seen in this run's fetch

        Returns:
            GhostResult counters
        """
        result = GhostResult()

        async with self.session_factory() as session:
            repo = SummonsRepository(session)
            active = await repo.list_active()
            result.scanned = len(active)
            missing = [r.id for r in active if r.summons_number not in observed]
            result.observed = result.scanned - len(missing)

            for record_id in missing:
                try:
                    # get() reloads the row if a rollback expired it
                    record = await repo.get(record_id)
                    if record is None:
                        continue
                    archived = await self._register_miss(repo, record)
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    result.errors += 1
                    logger.error(f"Ghost check failed for {record_id}: {e}", exc_info=True)
                    continue

                if archived:
                    result.archived += 1
                else:
                    result.warned += 1

        if result.errors:
            result.status = PhaseStatus.PARTIAL

        logger.info(
            f"Ghost detection: {result.scanned} active, {result.warned} warned, "
            f"{result.archived} archived"
        )
        return result

    async def _register_miss(self, repo: SummonsRepository, record: Any) -> bool:
        miss_count = (record.api_miss_count or 0) + 1

        if miss_count < self.grace_period:
            await repo.apply_patch(record, SummonsPatch(api_miss_count=miss_count))
            logger.warning(
                f"Summons {record.summons_number} missing from source "
                f"({miss_count}/{self.grace_period})"
            )
            return False

        now = self.clock()
        reason = infer_archive_reason(record, miss_count, now)
        patch = SummonsPatch(
            api_miss_count=miss_count,
            is_archived=True,
            archived_at=now,
            archived_reason=reason,
            updated_at=now,
        ).append_activity(
            ActivityLogEntry(
                date=now,
                type=ActivityType.ARCHIVED,
                description=f"Archived: {reason}",
                old_value="active",
                new_value="archived",
            )
        )
        await repo.apply_patch(record, patch)
        logger.info(f"Archived summons {record.summons_number}: {reason}")
        return True
