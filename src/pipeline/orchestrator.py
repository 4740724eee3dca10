"""Sync orchestrator: one discover → reconcile → verify cycle.

Coordinates the two source clients, the reconciler and the counter audit
into a single cycle.  Progress is reported by publishing frozen
:class:`SyncCycle` snapshots (``model_copy(update={...})``) through an
optional callback; the :class:`CycleRegistry` keeps the latest one.

ARCHITECTURE NOTE:
    Discovery queries run concurrently through ``throttled_gather`` with
    a bounded semaphore; both sources are independent services.  Each
    query reconciles its own results sequentially, and the reconciler
    serializes writes per natural key, so concurrency never produces
    duplicate rows.

    A failing query is counted and logged, never allowed to abort the
    others.  The whole discovery phase races the cycle deadline and the
    operator's cancel signal:

        discovery finished first   → verify (full cycles) → judge outcome
        deadline hit first         → abandon queries      → TIMEOUT
        cancel signal first        → abandon queries      → CANCELLED

    Nothing is rolled back: rows the reconciler already wrote stay.

    Outcome rules, in priority order:
        FAILED    a needed source rejected calls on an open breaker and
                  made zero network attempts this cycle
        DEGRADED  (failed records + failed queries) / (attempted records
                  + queries run) above the threshold
        HEALTHY   otherwise
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.config.loader import DiscoveryConfig, EventLocation
from src.interfaces.source_client import ICatalogSource, IEventSource, ISourceClient
from src.interfaces.store_provider import IStoreProvider
from src.models.entities import EntityType, ShowStatus
from src.models.records import RawRecord
from src.models.sync import CycleOutcome, SyncCycle, SyncType
from src.services.reconciler import Reconciler, ReconcileTally
from src.services.vote_aggregator import VoteAggregator
from src.utils.concurrency import throttled_gather
from src.utils.errors import SetlistSyncError
from src.utils.logging import bind_cycle_context, get_logger

logger = get_logger(__name__)

Publisher = Callable[[SyncCycle], None]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


@dataclass
class _SourceBaseline:
    """Pipeline counters captured when the cycle starts."""

    source: ISourceClient
    attempts: int
    rejected: int


@dataclass
class _CycleProgress:
    tally: ReconcileTally = field(default_factory=ReconcileTally)
    queries_run: int = 0
    query_failures: int = 0
    errors: list[str] = field(default_factory=list)


class SyncOrchestrator:
    """Drives sync cycles end to end.

    Parameters
    ----------
    store:
        The persistent store (verify phase reads).
    reconciler:
        Writes every discovered record.
    vote_aggregator:
        Supplies the counter audit used by the verify phase.
    catalog, events:
        The two source clients; either may be ``None`` when not deployed.
    discovery:
        Queries run each cycle.
    max_concurrency:
        Discovery queries in flight at once.
    deadline_seconds:
        Wall-clock budget for the discovery phase.
    degraded_threshold:
        Failure fraction above which a cycle is DEGRADED.
    """

    def __init__(
        self,
        store: IStoreProvider,
        reconciler: Reconciler,
        vote_aggregator: VoteAggregator,
        catalog: ICatalogSource | None,
        events: IEventSource | None,
        discovery: DiscoveryConfig,
        max_concurrency: int = 4,
        deadline_seconds: float = 300.0,
        degraded_threshold: float = 0.25,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._votes = vote_aggregator
        self._catalog = catalog
        self._events = events
        self._discovery = discovery
        self._max_concurrency = max(1, max_concurrency)
        self._deadline = deadline_seconds
        self._degraded_threshold = degraded_threshold

    @property
    def sources(self) -> list[ISourceClient]:
        return [s for s in (self._catalog, self._events) if s is not None]

    async def run_cycle(
        self,
        cycle: SyncCycle,
        cancel_event: asyncio.Event | None = None,
        publish: Publisher | None = None,
    ) -> SyncCycle:
        """Run one cycle to a terminal outcome and return the final snapshot."""
        cancel_event = cancel_event or asyncio.Event()
        publish = publish or (lambda _snapshot: None)

        with bind_cycle_context(cycle.cycle_id, cycle.sync_type.value):
            cycle = cycle.model_copy(
                update={"outcome": CycleOutcome.RUNNING, "started_at": _utcnow()}
            )
            publish(cycle)
            logger.info("sync_cycle_started")

            needed, missing = self._needed_sources(cycle.sync_type)
            progress = _CycleProgress()
            progress.errors.extend(f"{name} source is not configured" for name in missing)
            if not needed:
                return self._finish(cycle, progress, CycleOutcome.FAILED, publish)

            baselines = [
                _SourceBaseline(s, s.pipeline.attempts, s.pipeline.breaker.rejected_calls)
                for s in needed
            ]

            def _report() -> None:
                publish(self._snapshot(cycle, progress))

            outcome = await self._race_discovery(
                self._discover(cycle.sync_type, needed, progress, _report),
                cancel_event,
            )

            verification: dict[str, Any] = {}
            if outcome is None and cycle.sync_type is SyncType.FULL:
                try:
                    verification = await self.verify()
                except SetlistSyncError as exc:
                    progress.errors.append(f"verify: {exc}")
                    logger.error("sync_verify_failed", error=str(exc))
            cycle = cycle.model_copy(update={"verification": verification})

            if outcome is None:
                outcome = self._judge(baselines, progress)
            return self._finish(cycle, progress, outcome, publish)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _needed_sources(self, sync_type: SyncType) -> tuple[list[ISourceClient], list[str]]:
        wanted: list[tuple[str, ISourceClient | None]] = []
        if sync_type in (SyncType.FULL, SyncType.ARTISTS):
            wanted.append(("catalog", self._catalog))
        if sync_type in (SyncType.FULL, SyncType.SHOWS):
            wanted.append(("event", self._events))
        needed = [s for _, s in wanted if s is not None and s.is_available()]
        missing = [name for name, s in wanted if s is None or not s.is_available()]
        return needed, missing

    async def _discover(
        self,
        sync_type: SyncType,
        needed: list[ISourceClient],
        progress: _CycleProgress,
        report: Callable[[], None],
    ) -> None:
        page_size = self._discovery.page_size
        jobs: list[Awaitable[None]] = []

        if self._catalog in needed and sync_type in (SyncType.FULL, SyncType.ARTISTS):
            catalog = self._catalog
            for query in self._discovery.catalog_queries:
                jobs.append(self._run_query(
                    f"catalog:{query}",
                    lambda q=query: catalog.search(q, page_size),
                    progress,
                    report,
                ))

        if self._events in needed and sync_type in (SyncType.FULL, SyncType.SHOWS):
            events = self._events
            for keyword in self._discovery.event_keywords:
                jobs.append(self._run_query(
                    f"events:{keyword}",
                    lambda k=keyword: events.search(k, page_size),
                    progress,
                    report,
                ))
            for location in self._discovery.event_locations:
                jobs.append(self._run_query(
                    f"events@{_describe(location)}",
                    lambda loc=location: events.search_location(loc, page_size),
                    progress,
                    report,
                ))

        logger.info("sync_discovery_started", queries=len(jobs))
        results = await throttled_gather(jobs, asyncio.Semaphore(self._max_concurrency))
        for result in results:
            if isinstance(result, Exception):
                progress.query_failures += 1
                progress.errors.append(f"query crashed: {result!r}")
                logger.error("discovery_query_crashed", error=repr(result))

    async def _run_query(
        self,
        label: str,
        fetch: Callable[[], Awaitable[list[RawRecord]]],
        progress: _CycleProgress,
        report: Callable[[], None],
    ) -> None:
        progress.queries_run += 1
        try:
            records = await fetch()
        except SetlistSyncError as exc:
            progress.query_failures += 1
            progress.errors.append(f"{label}: {exc}")
            logger.warning("discovery_query_failed", query=label, error=str(exc))
            report()
            return

        for raw in records:
            try:
                await self._reconciler.reconcile(raw, progress.tally)
            except Exception as exc:
                # One broken record is a failed record, not a failed query.
                logger.error("record_reconcile_crashed", query=label, error=repr(exc))
                self._reconciler.record_failure(raw, progress.tally, exc)
        logger.info("discovery_query_complete", query=label, records=len(records))
        report()

    async def _race_discovery(
        self,
        discovery: Awaitable[None],
        cancel_event: asyncio.Event,
    ) -> CycleOutcome | None:
        """Return TIMEOUT / CANCELLED if discovery was cut short, else ``None``."""
        discovery_task = asyncio.ensure_future(discovery)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {discovery_task, cancel_task},
                timeout=self._deadline,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
            if not discovery_task.done():
                discovery_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await discovery_task

        if discovery_task in done:
            # Surface programming errors; per-query failures never reach here.
            discovery_task.result()
            return None
        if cancel_task in done:
            logger.warning("sync_cycle_cancelled")
            return CycleOutcome.CANCELLED
        logger.warning("sync_cycle_deadline_exceeded", deadline_seconds=self._deadline)
        return CycleOutcome.TIMEOUT

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(self) -> dict[str, Any]:
        """Repair counter drift and report coverage gaps in the synced data."""
        repaired = await self._votes.audit_counters()

        upcoming = await self._store.query(EntityType.SHOW, {"status": ShowStatus.UPCOMING})
        show_ids = [show["id"] for show in upcoming]
        with_setlists = {
            setlist["show_id"]
            for setlist in await self._store.query(EntityType.SETLIST, {"show_id__in": show_ids})
        }

        artists = await self._store.query(EntityType.ARTIST)
        names = [artist["name"] for artist in artists]
        with_songs = {
            song["artist_name"]
            for song in await self._store.query(EntityType.SONG, {"artist_name__in": names})
        }

        result = {
            "counters_repaired": len(repaired),
            "upcoming_shows": len(show_ids),
            "shows_without_setlists": len(set(show_ids) - with_setlists),
            "artists": len(artists),
            "artists_without_songs": sum(1 for name in names if name not in with_songs),
        }
        logger.info("sync_verify_complete", **result)
        return result

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def _judge(self, baselines: list[_SourceBaseline], progress: _CycleProgress) -> CycleOutcome:
        for baseline in baselines:
            pipeline = baseline.source.pipeline
            attempted = pipeline.attempts - baseline.attempts
            rejected = pipeline.breaker.rejected_calls - baseline.rejected
            if rejected > 0 and attempted == 0:
                logger.error(
                    "sync_source_unreachable",
                    source=baseline.source.get_provider_name(),
                    rejected_calls=rejected,
                )
                return CycleOutcome.FAILED

        failures = progress.tally.failed + progress.query_failures
        attempted = progress.tally.attempted + progress.queries_run
        if attempted and failures / attempted > self._degraded_threshold:
            return CycleOutcome.DEGRADED
        return CycleOutcome.HEALTHY

    @staticmethod
    def _snapshot(cycle: SyncCycle, progress: _CycleProgress) -> SyncCycle:
        return cycle.model_copy(update={
            "counts": progress.tally.snapshot(),
            "query_failures": progress.query_failures,
            "errors": [*progress.errors, *progress.tally.errors],
        })

    def _finish(
        self,
        cycle: SyncCycle,
        progress: _CycleProgress,
        outcome: CycleOutcome,
        publish: Publisher,
    ) -> SyncCycle:
        final = self._snapshot(cycle, progress).model_copy(
            update={"outcome": outcome, "finished_at": _utcnow()}
        )
        publish(final)
        logger.info(
            "sync_cycle_complete",
            outcome=outcome.value,
            attempted=final.attempted,
            failed=final.failed,
            query_failures=final.query_failures,
            duration_seconds=round(final.duration_seconds or 0.0, 3),
        )
        return final


def _describe(location: EventLocation) -> str:
    parts = [location.city, location.state_code, location.country_code]
    return ",".join(p for p in parts if p)
