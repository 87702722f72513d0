"""End-to-end tests for one sync run (SQLite store, mocked HTTP)."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from oathsync.config import SourceConfig
from oathsync.db.repository import SummonsRepository
from oathsync.db.sync_status import SyncStatusRecorder
from oathsync.integration.enrichment_client import EnrichmentResponse
from oathsync.integration.oath_client import OathClient
from oathsync.models import PhaseStatus
from oathsync.pipeline.orchestrator import SyncOrchestrator
from oathsync.pipeline.types import FetchResult


class FakeSource:
    def __init__(self, result=None, error=None):
        self.result = result or FetchResult()
        self.error = error
        self.calls = 0

    async def fetch(self, clients):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class FakeWorker:
    """Writes extracted fields straight to the store, like the real worker."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.calls = []

    async def invoke(self, request):
        self.calls.append(request.ticket_number)
        async with self.session_factory() as session:
            record = await SummonsRepository(session).get(request.record_id)
            record.violation_narrative = "Vehicle idling for more than three minutes"
            record.id_number = "ID-" + request.ticket_number
            record.license_plate_ocr = "ABC1234"
            await session.commit()
        return EnrichmentResponse(200, has_ocr_data=True)


async def no_sleep(seconds):
    return None


def socrata_rows(*tickets):
    return [
        {
            "ticket_number": ticket,
            "respondent_first_name": "ACME",
            "respondent_last_name": "DELIVERY LLC",
            "hearing_status": "SCHEDULED",
            "hearing_date": "2026-03-20T00:00:00.000",
            "charge_1_code_description": "IDLING - MOTOR VEHICLE",
            "balance_due": "350",
        }
        for ticket in tickets
    ]


def orchestrator(app_config, session_factory, clock, source, worker=None):
    return SyncOrchestrator(
        app_config,
        session_factory,
        source=source,
        enrichment=worker or FakeWorker(session_factory),
        sleep=no_sleep,
        clock=clock,
    )


async def status_of(session_factory):
    return await SyncStatusRecorder(session_factory).read()


class TestSyncOrchestrator:
    """Test a whole engine invocation."""

    @pytest.mark.asyncio
    async def test_full_run(self, app_config, session_factory, seeded_clients, clock):
        """Test fetch, metadata sync, ghost check and enrichment in one run."""

        def handler(request: httpx.Request) -> httpx.Response:
            if "ACME DELIVERY" in request.url.params["$where"]:
                return httpx.Response(200, json=socrata_rows("A1", "A2"))
            return httpx.Response(200, json=[])

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = OathClient(SourceConfig(api_url="https://data.test/oath.json"), http_client=http)
        worker = FakeWorker(session_factory)

        summary = await orchestrator(app_config, session_factory, clock, source, worker).run()

        assert summary.success
        assert summary.status_code == 200
        assert summary.clients == 2
        assert summary.metadata.created == 2
        assert summary.ghost.status is PhaseStatus.SUCCESS
        assert summary.enrichment.succeeded == 2
        assert sorted(worker.calls) == ["A1", "A2"]

        status = await status_of(session_factory)
        assert status.sync_in_progress is False
        assert status.last_successful_sync is not None
        assert status.phase1_status == "success"
        assert status.phase1_new_records == 2
        assert status.phase2_status == "success"
        assert status.phase2_ocr_processed == 2
        assert status.ocr_processed_today == 2
        assert status.oath_api_reachable is True
        assert status.last_error is None

        data = summary.to_dict()
        assert data["fetch"]["unique_records"] == 2
        assert data["metadata"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(
        self, app_config, session_factory, seeded_clients, make_record, clock
    ):
        """Test re-running over unchanged data changes nothing."""
        source = FakeSource(FetchResult(records=[make_record("A1")], queries=1))
        worker = FakeWorker(session_factory)

        await orchestrator(app_config, session_factory, clock, source, worker).run()
        clock.advance(hours=1)
        summary = await orchestrator(app_config, session_factory, clock, source, worker).run()

        assert (summary.metadata.created, summary.metadata.updated) == (0, 0)
        assert summary.metadata.unchanged == 1
        assert summary.enrichment.attempted == 0
        assert worker.calls == ["A1"]

    @pytest.mark.asyncio
    async def test_locked_run_returns_409(self, app_config, session_factory, seeded_clients, clock):
        """Test a concurrent invocation exits without touching anything."""
        recorder = SyncStatusRecorder(session_factory)
        assert await recorder.acquire_lock("other-run", timedelta(minutes=120))
        source = FakeSource()

        summary = await orchestrator(app_config, session_factory, clock, source).run()

        assert not summary.success
        assert summary.status_code == 409
        assert summary.skipped_reason == "locked"
        assert source.calls == 0
        assert (await status_of(session_factory)).sync_run_id == "other-run"

    @pytest.mark.asyncio
    async def test_fatal_error_returns_500(self, app_config, session_factory, seeded_clients, clock):
        """Test an unexpected exception is recorded and the lock released."""
        source = FakeSource(error=RuntimeError("socket exploded"))

        summary = await orchestrator(app_config, session_factory, clock, source).run()

        assert not summary.success
        assert summary.status_code == 500
        assert summary.error == "RuntimeError: socket exploded"

        status = await status_of(session_factory)
        assert status.sync_in_progress is False
        assert status.phase1_status == "failed"
        assert status.last_error == "RuntimeError: socket exploded"
        assert status.last_successful_sync is None

        # Lock was released: the next run proceeds
        retry = await orchestrator(app_config, session_factory, clock, FakeSource()).run()
        assert retry.status_code == 200

    @pytest.mark.asyncio
    async def test_failed_term_skips_ghost_detection(
        self, app_config, session_factory, seeded_clients, make_record, clock
    ):
        """Test a partial fetch never archives records it could not see."""
        full = FakeSource(FetchResult(records=[make_record("A1"), make_record("B1")], queries=2))
        await orchestrator(app_config, session_factory, clock, full).run()

        partial = FakeSource(
            FetchResult(records=[make_record("A1")], queries=2, failed_terms=["CERCONE EXTERIOR"])
        )
        summary = await orchestrator(app_config, session_factory, clock, partial).run()

        assert summary.success
        assert summary.metadata.status is PhaseStatus.PARTIAL
        assert summary.ghost.status is PhaseStatus.SKIPPED

        async with session_factory() as session:
            record = await SummonsRepository(session).get_by_number("B1")
        assert record.api_miss_count == 0

        status = await status_of(session_factory)
        assert status.ghost_status == "skipped"
        assert status.oath_api_error == "1/2 queries failed"

    @pytest.mark.asyncio
    async def test_truncated_fetch_skips_ghost_detection(
        self, app_config, session_factory, seeded_clients, make_record, clock
    ):
        """Test records beyond the page cap are never counted as missing."""
        full = FakeSource(FetchResult(records=[make_record("A1"), make_record("B1")], queries=2))
        await orchestrator(app_config, session_factory, clock, full).run()

        def handler(request: httpx.Request) -> httpx.Response:
            if "ACME DELIVERY" in request.url.params["$where"]:
                return httpx.Response(200, json=socrata_rows("A1", "X9"))
            return httpx.Response(200, json=[])

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        capped = OathClient(
            SourceConfig(api_url="https://data.test/oath.json", result_limit=2, max_pages=1),
            http_client=http,
        )

        for _ in range(3):
            summary = await orchestrator(app_config, session_factory, clock, capped).run()
            assert summary.ghost.status is PhaseStatus.SKIPPED
            assert summary.metadata.status is PhaseStatus.PARTIAL

        await http.aclose()
        async with session_factory() as session:
            record = await SummonsRepository(session).get_by_number("B1")
        assert record.api_miss_count == 0
        assert record.is_archived is False
        assert "ACME DELIVERY" in summary.to_dict()["fetch"]["truncated_terms"]

    @pytest.mark.asyncio
    async def test_no_clients(self, app_config, session_factory, clock):
        """Test an empty roster skips the fetch but still enriches stored records."""
        async with session_factory() as session:
            await SummonsRepository(session).create(
                dict(
                    summons_number="A1",
                    client_id="client-gone",
                    status="SCHEDULED",
                    amount_due=Decimal("350.00"),
                    ocr_status="pending",
                    ocr_failure_count=0,
                    api_miss_count=0,
                    is_archived=False,
                    activity_log=[],
                    created_at=clock.now,
                    updated_at=clock.now,
                )
            )
            await session.commit()
        source = FakeSource()
        worker = FakeWorker(session_factory)

        summary = await orchestrator(app_config, session_factory, clock, source, worker).run()

        assert summary.success
        assert summary.clients == 0
        assert source.calls == 0
        assert summary.metadata is None
        assert summary.enrichment.succeeded == 1
        assert worker.calls == ["A1"]

        status = await status_of(session_factory)
        assert status.last_successful_sync is not None
        assert status.phase1_status == "skipped"
        assert status.ghost_status == "skipped"
        assert status.ocr_processed_today == 1

    @pytest.mark.asyncio
    async def test_enrichment_skipped_without_worker(
        self, app_config, session_factory, seeded_clients, make_record, clock
    ):
        """Test a deployment without a worker URL still syncs metadata."""
        config = replace(app_config, enrichment=replace(app_config.enrichment, worker_url=None))
        source = FakeSource(FetchResult(records=[make_record("A1")], queries=1))

        summary = await SyncOrchestrator(
            config, session_factory, source=source, sleep=no_sleep, clock=clock
        ).run()

        assert summary.success
        assert summary.metadata.created == 1
        assert summary.enrichment.status is PhaseStatus.SKIPPED
        assert (await status_of(session_factory)).phase2_status == "skipped"

    @pytest.mark.asyncio
    async def test_lock_store_error_returns_500(
        self, app_config, session_factory, seeded_clients, clock
    ):
        """Test a store failure while locking aborts the run before any phase."""
        source = FakeSource()
        error = OperationalError("UPDATE sync_status", {}, Exception("database is locked"))

        with patch(
            "oathsync.db.sync_status.SyncStatusRecorder.acquire_lock",
            new=AsyncMock(side_effect=error),
        ):
            summary = await orchestrator(app_config, session_factory, clock, source).run()

        assert summary.status_code == 500
        assert summary.error.startswith("OperationalError")
        assert source.calls == 0
        assert (await status_of(session_factory)).last_error == summary.error
