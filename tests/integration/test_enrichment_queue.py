"""Integration tests for the enrichment queue processor."""

from __future__ import annotations

import json
from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest

from oathsync.canonical.values import ensure_utc, normalize_timestamp
from oathsync.config import EnrichmentConfig
from oathsync.db.repository import SummonsRepository
from oathsync.enrichment.queue import EnrichmentQueueProcessor
from oathsync.enrichment.quota import QuotaTracker
from oathsync.errors import EnrichmentInvocationError
from oathsync.integration.enrichment_client import EnrichmentClient, EnrichmentResponse
from oathsync.models import PhaseStatus
from oathsync.pipeline.types import EnrichmentResult


class FakeWorker:
    """Stands in for EnrichmentClient; answers from a per-ticket script."""

    def __init__(self, answers=None, default=None):
        self.answers = answers or {}
        self.default = default or EnrichmentResponse(200, has_ocr_data=True)
        self.calls = []

    async def invoke(self, request):
        self.calls.append(request)
        answer = self.answers.get(request.ticket_number, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


async def add_summons(session_factory, clock, number, hearing_in_days=None, **fields):
    values = dict(
        summons_number=number,
        client_id="client-acme",
        status="SCHEDULED",
        amount_due=Decimal("350.00"),
        ocr_status="pending",
        ocr_failure_count=0,
        api_miss_count=0,
        is_archived=False,
        activity_log=[],
        created_at=clock.now - timedelta(days=5),
        updated_at=clock.now - timedelta(days=5),
    )
    if hearing_in_days is not None:
        values["hearing_date"] = normalize_timestamp(clock.now + timedelta(days=hearing_in_days))
    values.update(fields)
    async with session_factory() as session:
        await SummonsRepository(session).create(values)
        await session.commit()


async def load(session_factory, number):
    async with session_factory() as session:
        return await SummonsRepository(session).get_by_number(number)


def make_processor(session_factory, clock, worker, max_daily=500, sleep=None, **config):
    settings = dict(worker_url="http://worker.test", max_daily=max_daily, throttle_ms=2000)
    settings.update(config)
    enrichment = EnrichmentConfig(**settings)
    quota = QuotaTracker(session_factory, enrichment.max_daily, clock=clock)
    return EnrichmentQueueProcessor(
        session_factory, worker, quota, enrichment, sleep=sleep or SleepRecorder(), clock=clock
    )


class TestBuildQueue:
    """Test candidate selection and ordering."""

    @pytest.mark.asyncio
    async def test_ordered_by_priority(self, session_factory, clock):
        """Test the nearest hearing is first and ties fall back to ticket number."""
        await add_summons(session_factory, clock, "FAR", hearing_in_days=60)
        await add_summons(session_factory, clock, "NEAR", hearing_in_days=2)
        await add_summons(session_factory, clock, "NONE")
        await add_summons(session_factory, clock, "B-TIE", hearing_in_days=5)
        await add_summons(session_factory, clock, "A-TIE", hearing_in_days=5)

        queue = await make_processor(session_factory, clock, FakeWorker()).build_queue()

        assert [e.summons_number for e in queue] == ["NEAR", "A-TIE", "B-TIE", "FAR", "NONE"]
        assert [e.score for e in queue] == [20, 50, 50, 215, 450]

    @pytest.mark.asyncio
    async def test_excludes_capped_archived_and_complete(self, session_factory, clock):
        """Test only eligible records enter the queue."""
        await add_summons(session_factory, clock, "OK", hearing_in_days=3)
        await add_summons(session_factory, clock, "CAPPED", ocr_failure_count=3)
        await add_summons(session_factory, clock, "ARCHIVED", is_archived=True)
        await add_summons(
            session_factory, clock, "DONE", ocr_status="complete",
            violation_narrative="text", id_number="1", license_plate_ocr="ABC",
        )

        processor = make_processor(session_factory, clock, FakeWorker())
        result = EnrichmentResult()
        queue = await processor.build_queue(result)

        assert [e.summons_number for e in queue] == ["OK"]
        assert result.excluded_by_cap == 1

    @pytest.mark.asyncio
    async def test_hearing_date_floor(self, session_factory, clock):
        """Test records with hearings before the floor are left out."""
        await add_summons(session_factory, clock, "OLD", hearing_in_days=-400)
        await add_summons(session_factory, clock, "NEW", hearing_in_days=10)

        processor = make_processor(
            session_factory, clock, FakeWorker(), hearing_date_floor=date(2026, 1, 1)
        )

        assert [e.summons_number for e in await processor.build_queue()] == ["NEW"]

    @pytest.mark.asyncio
    async def test_healing_candidates_are_queued(self, session_factory, clock):
        """Test complete records missing derived fields come back once."""
        await add_summons(
            session_factory, clock, "HEAL", ocr_status="complete",
            violation_narrative="text", license_plate_ocr="ABC",
        )

        queue = await make_processor(session_factory, clock, FakeWorker()).build_queue()

        assert [(e.summons_number, e.healing) for e in queue] == [("HEAL", True)]


class TestProcessing:
    """Test the budgeted, throttled processing loop."""

    @pytest.mark.asyncio
    async def test_success_marks_complete(self, session_factory, clock):
        await add_summons(session_factory, clock, "A1", hearing_in_days=3, ocr_failure_count=1)
        worker = FakeWorker()

        result = await make_processor(session_factory, clock, worker).run()

        assert (result.attempted, result.succeeded, result.failed) == (1, 1, 0)
        stored = await load(session_factory, "A1")
        assert stored.ocr_status == "complete"
        assert stored.ocr_failure_count == 0
        assert ensure_utc(stored.last_scan_date) == clock.now
        assert stored.activity_log[-1]["type"] == "OCR_COMPLETE"
        assert worker.calls[0].ticket_number == "A1"

    @pytest.mark.asyncio
    async def test_failure_increments_count(self, session_factory, clock):
        """Test a failed call records the reason and leaves the record pending."""
        await add_summons(session_factory, clock, "A1", hearing_in_days=3, ocr_failure_count=1)
        worker = FakeWorker(default=EnrichmentResponse(500, message="Textract throttled"))

        result = await make_processor(session_factory, clock, worker).run()

        assert result.failed == 1
        assert result.status is PhaseStatus.PARTIAL
        stored = await load(session_factory, "A1")
        assert stored.ocr_status == "pending"
        assert stored.ocr_failure_count == 2
        assert stored.ocr_failure_reason == "Textract throttled"
        assert ensure_utc(stored.last_ocr_failure_at) == clock.now

    @pytest.mark.asyncio
    async def test_third_failure_excludes_next_run(self, session_factory, clock):
        """Test a record reaching the cap is not scheduled again."""
        await add_summons(session_factory, clock, "A1", hearing_in_days=3, ocr_failure_count=2)
        worker = FakeWorker(default=EnrichmentResponse(200))

        await make_processor(session_factory, clock, worker).run()
        second = await make_processor(session_factory, clock, worker).run()

        assert len(worker.calls) == 1
        assert second.excluded_by_cap == 1
        assert (await load(session_factory, "A1")).ocr_failure_count == 3

    @pytest.mark.asyncio
    async def test_quota_limits_batch(self, session_factory, clock):
        """Test only the best-scored prefix that fits the quota is processed."""
        for days, number in ((1, "A"), (2, "B"), (3, "C")):
            await add_summons(session_factory, clock, number, hearing_in_days=days)
        worker = FakeWorker()
        processor = make_processor(session_factory, clock, worker, max_daily=2)

        result = await processor.run()

        assert [c.ticket_number for c in worker.calls] == ["A", "B"]
        assert result.quota_remaining_start == 2
        assert result.quota_remaining_end == 0
        assert (await load(session_factory, "C")).ocr_status == "pending"

        again = await processor.run()
        assert again.selected == 0
        assert len(worker.calls) == 2

    @pytest.mark.asyncio
    async def test_throttle_between_calls_only(self, session_factory, clock):
        """Test the delay is applied between calls, not before the first."""
        for number in ("A", "B", "C"):
            await add_summons(session_factory, clock, number, hearing_in_days=3)
        sleep = SleepRecorder()

        await make_processor(session_factory, clock, FakeWorker(), sleep=sleep).run()

        assert sleep.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_narrative_present_is_skipped(self, session_factory, clock):
        """Test records that already carry OCR data never reach the worker."""
        await add_summons(
            session_factory, clock, "A1", hearing_in_days=3, ocr_status="pending",
            violation_narrative="text", id_number="1", license_plate_ocr="ABC",
        )
        worker = FakeWorker()

        result = await make_processor(session_factory, clock, worker).run()

        assert worker.calls == []
        assert result.skipped == 1
        assert (await load(session_factory, "A1")).ocr_status == "complete"

    @pytest.mark.asyncio
    async def test_unreachable_worker_does_not_consume_quota(self, session_factory, clock):
        """Test a transport failure counts as a failure but costs no quota."""
        await add_summons(session_factory, clock, "A1", hearing_in_days=3)
        worker = FakeWorker(default=EnrichmentInvocationError("connection refused"))

        result = await make_processor(session_factory, clock, worker, max_daily=5).run()

        assert result.failed == 1
        assert result.quota_remaining_end == 5
        assert (await load(session_factory, "A1")).ocr_failure_reason == "connection refused"

    @pytest.mark.asyncio
    async def test_malformed_envelope_fails_one_record_only(self, session_factory, clock):
        """Test a worker answer with a bad envelope status is a per-record failure."""
        await add_summons(session_factory, clock, "A1", hearing_in_days=1)
        await add_summons(session_factory, clock, "B1", hearing_in_days=2)

        def handler(request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["ticket_number"] == "A1":
                return httpx.Response(200, json={"statusCode": "oops", "body": "{}"})
            return httpx.Response(200, json={"hasOCRData": True})

        config = EnrichmentConfig(worker_url="http://worker.test")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            worker = EnrichmentClient(config, http_client=http)
            result = await make_processor(session_factory, clock, worker, max_daily=5).run()

        assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
        assert result.quota_remaining_end == 3
        failed = await load(session_factory, "A1")
        assert failed.ocr_failure_count == 1
        assert "statusCode" in failed.ocr_failure_reason
        assert (await load(session_factory, "B1")).ocr_status == "complete"

    @pytest.mark.asyncio
    async def test_healing_run(self, session_factory, clock):
        """Test a healing pass stamps last_healing_at and keeps the failure count."""
        await add_summons(
            session_factory, clock, "HEAL", ocr_status="complete", ocr_failure_count=1,
            violation_narrative="text", license_plate_ocr="ABC",
        )
        worker = FakeWorker()

        result = await make_processor(session_factory, clock, worker).run()

        assert result.healed == 1
        assert worker.calls[0].healing_mode is True
        stored = await load(session_factory, "HEAL")
        assert ensure_utc(stored.last_healing_at) == clock.now
        assert stored.ocr_failure_count == 1

    @pytest.mark.asyncio
    async def test_no_client_skips(self, session_factory, clock):
        """Test the phase is skipped without a worker."""
        result = await make_processor(session_factory, clock, None).run()

        assert result.status is PhaseStatus.SKIPPED
