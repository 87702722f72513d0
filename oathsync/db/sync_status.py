"""Sync status recorder.

Run-level bookkeeping writes go through here. Each write uses its own
short session so a failed status write can never poison the session a
phase is using, and status failures never abort a run.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.db.models import SyncStatusModel
from oathsync.db.repository import SyncStatusRepository
from oathsync.models import SyncStatusPatch

logger = logging.getLogger(__name__)


class SyncStatusRecorder:
    """Idempotent upserts against the singleton sync status record."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        status_id: str = "GLOBAL",
    ):
        self.session_factory = session_factory
        self.status_id = status_id

    async def record(self, patch: SyncStatusPatch | None = None, **fields) -> bool:
        """Merge fields into the status record, creating it if absent.

        Accepts either a prepared patch or keyword fields.

        Returns:
            True if the write landed, False if it failed (already logged)
        """
        if patch is None:
            patch = SyncStatusPatch(**fields)
        if patch.is_empty:
            return True

        try:
            async with self.session_factory() as session:
                repo = SyncStatusRepository(session, self.status_id)
                await repo.merge(patch)
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record sync status ({sorted(patch.model_fields_set)}): {e}",
                exc_info=True,
            )
            return False

    async def read(self) -> SyncStatusModel | None:
        try:
            async with self.session_factory() as session:
                return await SyncStatusRepository(session, self.status_id).get()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read sync status: {e}", exc_info=True)
            return None

    async def acquire_lock(self, run_id: str, ttl: timedelta) -> bool:
        """Claim the run lock. Store errors propagate: no lock, no run."""
        async with self.session_factory() as session:
            return await SyncStatusRepository(session, self.status_id).acquire_lock(
                run_id, ttl
            )

    async def release_lock(self, run_id: str) -> None:
        try:
            async with self.session_factory() as session:
                released = await SyncStatusRepository(session, self.status_id).release_lock(
                    run_id
                )
            if not released:
                logger.warning(f"Run lock for {run_id} was not held at release")
        except SQLAlchemyError as e:
            logger.error(f"Failed to release run lock for {run_id}: {e}", exc_info=True)
