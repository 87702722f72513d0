"""Pytest configuration and fixtures for oathsync tests.

Provides common fixtures for testing.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from oathsync.config import AppConfig, DBConfig, EnrichmentConfig, GhostConfig
from oathsync.db.connection import build_engine, build_session_factory, init_db
from oathsync.db.repository import ClientRepository
from oathsync.models import Client
from oathsync.pipeline.types import SourceRecord

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("ENRICHMENT_WORKER_URL", raising=False)
    monkeypatch.delenv("NYC_OPEN_DATA_APP_TOKEN", raising=False)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def db_url(tmp_path) -> str:
    """File database so separately opened sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'oathsync.db'}"


@pytest.fixture
def app_config(db_url: str) -> AppConfig:
    return AppConfig(
        db=DBConfig(url=db_url),
        enrichment=EnrichmentConfig(
            worker_url="http://worker.test/extract",
            max_daily=500,
            throttle_ms=2000,
            max_failures=3,
        ),
        ghost=GhostConfig(grace_period=3),
    )


@pytest_asyncio.fixture()
async def session_factory(app_config: AppConfig):
    """Create a fresh schema and yield a session factory bound to it."""
    engine = build_engine(app_config.db)
    await init_db(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def cercone_client() -> Client:
    return Client(
        id="client-cercone",
        name="Cercone Exterior Restoration Corp",
        akas=["CERCONE EXTERIOR RESTORATION C"],
        owner="user-1",
    )


@pytest.fixture
def acme_client() -> Client:
    return Client(id="client-acme", name="Acme Delivery LLC", akas=["ACME DELIVERY SERVICE"])


@pytest_asyncio.fixture()
async def seeded_clients(session_factory, cercone_client: Client, acme_client: Client):
    async with session_factory() as session:
        repo = ClientRepository(session)
        await repo.add(cercone_client)
        await repo.add(acme_client)
        await session.commit()
    return [cercone_client, acme_client]


@pytest.fixture
def make_record():
    """Factory for SourceRecords with realistic defaults."""

    def _make(summons_number: str = "000123456X", **overrides) -> SourceRecord:
        values = dict(
            summons_number=summons_number,
            respondent_first_name="ACME",
            respondent_last_name="DELIVERY",
            status="SCHEDULED",
            hearing_result=None,
            hearing_date="2026-03-20T00:00:00.000Z",
            hearing_time="09:30",
            code_description="IDLING - MOTOR VEHICLE",
            violation_date="2026-01-15T00:00:00.000Z",
            license_plate="ABC1234",
            base_fine=Decimal("350.00"),
            amount_due=Decimal("350.00"),
            paid_amount=Decimal("0.00"),
            summons_pdf_link=f"https://docs.test/{summons_number}.pdf",
            video_link=f"https://video.test/{summons_number}",
        )
        values.update(overrides)
        return SourceRecord(**values)

    return _make
