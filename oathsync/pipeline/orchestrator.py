"""Sync orchestrator - one engine invocation, start to finish.

Phases run strictly in sequence:
1. Run lock (a concurrent run gets status 409 and touches nothing)
2. Client roster + entity resolver
3. Source fetch + metadata sync (unbounded cost)
4. Ghost detection against the fetch's observed ticket numbers
5. Enrichment queue against the remaining daily quota

Per-item failures are contained inside each phase. Anything escaping a
phase is fatal: logged with traceback, recorded on the sync status record,
and reported as status 500. Work committed before the failure stays.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oathsync.canonical.values import normalize_timestamp, utcnow
from oathsync.config import AppConfig
from oathsync.core.logging import bind_run_context, clear_run_context
from oathsync.db.repository import ClientRepository
from oathsync.db.sync_status import SyncStatusRecorder
from oathsync.enrichment.queue import EnrichmentQueueProcessor
from oathsync.enrichment.quota import QuotaTracker
from oathsync.errors import RunLockedError
from oathsync.integration.enrichment_client import EnrichmentClient
from oathsync.integration.oath_client import OathClient
from oathsync.matching.resolver import EntityResolver
from oathsync.models import Client, PhaseStatus, SyncStatusPatch
from oathsync.pipeline.ghost_detector import GhostDetector
from oathsync.pipeline.metadata_sync import MetadataSyncPhase
from oathsync.pipeline.types import (
    EnrichmentResult,
    FetchResult,
    GhostResult,
    MetadataSyncResult,
    SyncSummary,
)

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs the incremental sync engine once.

    Collaborators are injectable; by default the HTTP clients are built
    from configuration and closed when the run ends.
    """

    def __init__(
        self,
        config: AppConfig,
        session_factory: async_sessionmaker[AsyncSession],
        source: OathClient | None = None,
        enrichment: EnrichmentClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.session_factory = session_factory
        self.source = source
        self.enrichment = enrichment
        self.sleep = sleep
        self.clock = clock
        self.recorder = SyncStatusRecorder(session_factory, config.run.status_id)
        self._phase = "startup"

    async def run(self) -> SyncSummary:
        """Execute one sync run.

        Returns:
            SyncSummary; success=False with status_code 409 (locked) or
            500 (fatal error) when the run did not complete
        """
        run_id = uuid4().hex
        started = time.monotonic()
        summary = SyncSummary(run_id=run_id, started_at=normalize_timestamp(self.clock()))
        bind_run_context(run_id=run_id)

        try:
            logger.info(f"Starting sync run {run_id}")
            try:
                await self._acquire_lock(run_id)
            except RunLockedError as e:
                logger.warning(str(e))
                summary.success = False
                summary.status_code = 409
                summary.skipped_reason = "locked"
                return summary
            except Exception as e:
                logger.error(f"Could not acquire run lock: {e}", exc_info=True)
                summary.success = False
                summary.status_code = 500
                summary.error = f"{type(e).__name__}: {e}"
                await self.recorder.record(last_error=summary.error)
                return summary

            try:
                await self._run_phases(summary)
            except Exception as e:
                logger.error(f"Sync run {run_id} failed in {self._phase}: {e}", exc_info=True)
                summary.success = False
                summary.status_code = 500
                summary.error = f"{type(e).__name__}: {e}"
                await self._record_failure(summary.error)
            finally:
                await self.recorder.release_lock(run_id)

            return summary
        finally:
            summary.finished_at = normalize_timestamp(self.clock())
            summary.duration_seconds = time.monotonic() - started
            logger.info(
                f"Sync run {run_id} finished: success={summary.success} "
                f"status={summary.status_code} in {summary.duration_seconds:.1f}s"
            )
            clear_run_context()

    async def _acquire_lock(self, run_id: str) -> None:
        ttl = timedelta(minutes=self.config.run.lock_ttl_minutes)
        if not await self.recorder.acquire_lock(run_id, ttl):
            status = await self.recorder.read()
            raise RunLockedError(status.sync_run_id if status else None)

    async def _run_phases(self, summary: SyncSummary) -> None:
        self._phase = "clients"
        clients = await self._load_clients()
        summary.clients = len(clients)

        if clients:
            self._phase = "phase1"
            await self.recorder.record(phase1_status=PhaseStatus.RUNNING.value)
            fetch = await self._fetch(clients)
            summary.fetch = fetch

            resolver = EntityResolver(clients, self.config.matching)
            metadata = await MetadataSyncPhase(self.session_factory, self.clock).run(
                fetch.records, resolver, clients_processed=len(clients)
            )
            if fetch.source_down:
                metadata.status = PhaseStatus.FAILED
            elif not fetch.complete:
                metadata.status = PhaseStatus.PARTIAL
            summary.metadata = metadata
            await self._record_metadata(metadata)

            self._phase = "ghost"
            summary.ghost = await self._detect_ghosts(fetch)
        else:
            # Stored records still get their OCR pass
            logger.info("No clients found; skipping fetch and ghost detection")
            await self.recorder.record(
                phase1_status=PhaseStatus.SKIPPED.value, ghost_status=PhaseStatus.SKIPPED.value
            )

        self._phase = "phase2"
        summary.enrichment = await self._enrich()

        self._phase = "finalize"
        await self.recorder.record(
            last_successful_sync=self.clock(), sync_in_progress=False, last_error=None
        )

    async def _load_clients(self) -> list[Client]:
        async with self.session_factory() as session:
            return await ClientRepository(session).list_clients()

    async def _fetch(self, clients: list[Client]) -> FetchResult:
        source = self.source or OathClient(self.config.source)
        try:
            fetch = await source.fetch(clients)
        finally:
            if self.source is None:
                await source.aclose()

        await self.recorder.record(
            oath_api_reachable=not fetch.source_down,
            oath_api_last_check=self.clock(),
            oath_api_error=(
                f"{len(fetch.failed_terms)}/{fetch.queries} queries failed"
                if fetch.failed_terms
                else None
            ),
        )
        return fetch

    async def _record_metadata(self, metadata: MetadataSyncResult) -> None:
        await self.recorder.record(
            phase1_status=metadata.status.value,
            phase1_completed_at=self.clock(),
            phase1_new_records=metadata.created,
            phase1_updated_records=metadata.updated,
            phase1_unchanged_records=metadata.unchanged,
        )

    async def _detect_ghosts(self, fetch: FetchResult) -> GhostResult:
        if not fetch.complete:
            # A partial fetch cannot tell a ghost from an outage
            logger.warning(
                f"Skipping ghost detection: {len(fetch.failed_terms)} source queries failed, "
                f"{len(fetch.truncated_terms)} truncated"
            )
            ghost = GhostResult(status=PhaseStatus.SKIPPED)
        else:
            ghost = await GhostDetector(
                self.session_factory, self.config.ghost.grace_period, self.clock
            ).run(fetch.observed_numbers)

        await self.recorder.record(
            ghost_status=ghost.status.value,
            ghost_warned=ghost.warned,
            ghost_archived=ghost.archived,
        )
        return ghost

    async def _enrich(self) -> EnrichmentResult:
        client = self.enrichment
        owns_client = False
        if client is None and self.config.enrichment.worker_url:
            client = EnrichmentClient(self.config.enrichment)
            owns_client = True

        if client is None:
            logger.info("No enrichment worker configured; skipping OCR phase")
            result = EnrichmentResult(status=PhaseStatus.SKIPPED)
            await self.recorder.record(
                phase2_status=result.status.value, phase2_completed_at=self.clock()
            )
            return result

        await self.recorder.record(phase2_status=PhaseStatus.RUNNING.value)
        quota = QuotaTracker(
            self.session_factory,
            self.config.enrichment.max_daily,
            self.config.run.status_id,
            self.clock,
        )
        try:
            result = await EnrichmentQueueProcessor(
                self.session_factory,
                client,
                quota,
                self.config.enrichment,
                sleep=self.sleep,
                clock=self.clock,
            ).run()
        finally:
            if owns_client:
                await client.aclose()

        await self.recorder.record(
            phase2_status=result.status.value,
            phase2_completed_at=self.clock(),
            phase2_ocr_processed=result.succeeded,
            phase2_ocr_failed=result.failed,
            phase2_ocr_remaining=result.quota_remaining_end,
        )
        return result

    async def _record_failure(self, error: str) -> None:
        patch = SyncStatusPatch(sync_in_progress=False, last_error=error)
        if self._phase == "phase1":
            patch.phase1_status = PhaseStatus.FAILED.value
        elif self._phase == "ghost":
            patch.ghost_status = PhaseStatus.FAILED.value
        elif self._phase == "phase2":
            patch.phase2_status = PhaseStatus.FAILED.value
        await self.recorder.record(patch)
