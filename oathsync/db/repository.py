"""Store access for clients, case records and the sync status singleton.

Every automated write to a case record goes through ``SummonsRepository
.apply_patch`` with a typed ``SummonsPatch``; nothing else sets columns.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oathsync.canonical.names import is_valid_name
from oathsync.canonical.values import utcnow
from oathsync.db.models import ClientModel, SummonsModel, SyncStatusModel
from oathsync.models import Client, SummonsPatch, SyncStatusPatch

logger = logging.getLogger(__name__)


def _blank(column):
    return or_(column.is_(None), column == "")


def _filled(column):
    return and_(column.is_not(None), column != "")


class ClientRepository:
    """Read access to registered clients."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_clients(self) -> list[Client]:
        """Full client scan, ordered by name then id.

        Rows whose name is not a non-empty string are skipped.
        """
        result = await self.session.execute(
            select(ClientModel).order_by(ClientModel.name, ClientModel.id)
        )
        clients: list[Client] = []
        for row in result.scalars():
            if not is_valid_name(row.name):
                logger.warning(f"Skipping client {row.id}: invalid name")
                continue
            clients.append(
                Client(id=row.id, name=row.name, akas=row.akas or [], owner=row.owner)
            )
        return clients

    async def add(self, client: Client) -> ClientModel:
        model = ClientModel(
            id=client.id, name=client.name, akas=list(client.akas), owner=client.owner
        )
        self.session.add(model)
        await self.session.flush()
        return model


class SummonsRepository:
    """Case record queries and typed writes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_number(self, summons_number: str) -> SummonsModel | None:
        result = await self.session.execute(
            select(SummonsModel).where(SummonsModel.summons_number == summons_number)
        )
        return result.scalar_one_or_none()

    async def get(self, record_id: str) -> SummonsModel | None:
        return await self.session.get(SummonsModel, record_id)

    async def create(self, values: dict[str, Any]) -> SummonsModel:
        model = SummonsModel(**values)
        self.session.add(model)
        await self.session.flush()
        return model

    async def apply_patch(self, record: SummonsModel, patch: SummonsPatch) -> SummonsModel:
        """Write the fields set on ``patch`` (and any appended activity) to ``record``."""
        values = patch.to_values(current_log=record.activity_log)
        for column, value in values.items():
            setattr(record, column, value)
        await self.session.flush()
        return record

    async def list_active(self) -> list[SummonsModel]:
        """All non-archived case records."""
        result = await self.session.execute(
            select(SummonsModel)
            .where(SummonsModel.is_archived.is_(False))
            .order_by(SummonsModel.summons_number)
        )
        return list(result.scalars())

    async def list_enrichment_candidates(self) -> list[SummonsModel]:
        """Non-archived records that may need OCR.

        Includes pending rows, legacy 'failed' rows, legacy rows with
        neither status nor narrative, and never-healed rows whose
        narrative lacks the ID number or plate.
        """
        healing = and_(
            _filled(SummonsModel.violation_narrative),
            or_(_blank(SummonsModel.id_number), _blank(SummonsModel.license_plate_ocr)),
            SummonsModel.last_healing_at.is_(None),
        )
        stmt = (
            select(SummonsModel)
            .where(
                SummonsModel.is_archived.is_(False),
                or_(
                    SummonsModel.ocr_status.in_(("pending", "failed")),
                    and_(
                        _blank(SummonsModel.ocr_status),
                        _blank(SummonsModel.violation_narrative),
                    ),
                    healing,
                ),
            )
            .order_by(SummonsModel.summons_number)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def count(self, archived: bool | None = None) -> int:
        stmt = select(func.count()).select_from(SummonsModel)
        if archived is not None:
            stmt = stmt.where(SummonsModel.is_archived.is_(archived))
        return (await self.session.execute(stmt)).scalar_one()


class SyncStatusRepository:
    """Singleton status record: get-or-create, merge-update, run lock."""

    def __init__(self, session: AsyncSession, status_id: str = "GLOBAL"):
        self.session = session
        self.status_id = status_id

    async def get(self) -> SyncStatusModel | None:
        return await self.session.get(SyncStatusModel, self.status_id)

    async def get_or_create(self) -> SyncStatusModel:
        """Fetch the singleton, creating it on first use.

        A concurrent creator winning the insert is handled by re-reading.
        """
        status = await self.get()
        if status is not None:
            return status

        status = SyncStatusModel(id=self.status_id, sync_in_progress=False, ocr_processed_today=0)
        self.session.add(status)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            status = await self.get()
            if status is None:
                raise
            return status

        logger.info(f"Created sync status record '{self.status_id}'")
        return status

    async def merge(self, patch: SyncStatusPatch) -> SyncStatusModel:
        """Create-if-absent, then write the fields set on ``patch``."""
        status = await self.get_or_create()
        for column, value in patch.to_values().items():
            setattr(status, column, value)
        await self.session.flush()
        return status

    async def acquire_lock(
        self, run_id: str, ttl: timedelta, now: datetime | None = None
    ) -> bool:
        """Atomically claim the run lock.

        Succeeds when nobody holds the lock or the holder's lock is older
        than ``ttl``.

        Returns:
            True if this run now holds the lock
        """
        now = now or utcnow()
        await self.get_or_create()

        stale_before = now - ttl
        stmt = (
            update(SyncStatusModel)
            .where(
                SyncStatusModel.id == self.status_id,
                or_(
                    SyncStatusModel.sync_in_progress.is_(False),
                    SyncStatusModel.sync_lock_acquired_at.is_(None),
                    SyncStatusModel.sync_lock_acquired_at < stale_before,
                ),
            )
            .values(
                sync_in_progress=True,
                sync_run_id=run_id,
                sync_lock_acquired_at=now,
                last_sync_attempt=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    async def release_lock(self, run_id: str) -> bool:
        """Release the lock if ``run_id`` still holds it."""
        stmt = (
            update(SyncStatusModel)
            .where(
                SyncStatusModel.id == self.status_id,
                SyncStatusModel.sync_run_id == run_id,
            )
            .values(sync_in_progress=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1
