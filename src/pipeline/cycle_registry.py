"""Background execution and bookkeeping for sync cycles.

The registry is the operator-facing side of the orchestrator: it starts a
cycle as a background task and hands back its id straight away, keeps the
latest :class:`SyncCycle` snapshot per id for status polling, and relays
cancel requests to the running cycle through an ``asyncio.Event``.

Only one cycle runs at a time; a trigger while one is running raises
:class:`CycleInProgressError`.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timezone

from src.models.sync import CycleOutcome, SyncCycle, SyncType
from src.pipeline.orchestrator import SyncOrchestrator
from src.utils.errors import (
    CycleInProgressError,
    NotFoundError,
    SyncTimeoutError,
    ValidationError,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

_MAX_HISTORY = 50


class CycleRegistry:
    """Starts, tracks and cancels sync cycles.

    Parameters
    ----------
    orchestrator:
        Runs each cycle.
    max_history:
        Finished cycles kept for status queries; older ones are dropped.
    id_factory:
        Produces cycle ids (injectable for tests).
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        max_history: int = _MAX_HISTORY,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._max_history = max_history
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._cycles: OrderedDict[str, SyncCycle] = OrderedDict()
        self._tasks: dict[str, asyncio.Task[SyncCycle]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # -- Operator interface ----------------------------------------------------

    def trigger(self, sync_type: SyncType | str = SyncType.FULL) -> SyncCycle:
        """Start a cycle in the background and return its PENDING snapshot."""
        try:
            sync_type = SyncType(sync_type)
        except ValueError as exc:
            raise ValidationError(message=f"Unknown sync type: {sync_type!r}") from exc

        running = self.running_cycle_id
        if running is not None:
            raise CycleInProgressError(running)

        cycle = SyncCycle(cycle_id=self._id_factory(), sync_type=sync_type)
        cancel_event = asyncio.Event()
        self._cycles[cycle.cycle_id] = cycle
        self._cancel_events[cycle.cycle_id] = cancel_event
        self._tasks[cycle.cycle_id] = asyncio.create_task(
            self._run(cycle, cancel_event), name=f"sync-{cycle.cycle_id}"
        )
        self._trim_history()
        logger.info("sync_cycle_triggered", cycle_id=cycle.cycle_id, sync_type=sync_type.value)
        return cycle

    def status(self, cycle_id: str) -> SyncCycle:
        cycle = self._cycles.get(cycle_id)
        if cycle is None:
            raise NotFoundError("sync_cycle", cycle_id)
        return cycle

    def cancel(self, cycle_id: str) -> SyncCycle:
        """Request cooperative cancellation.  A finished cycle is returned unchanged."""
        cycle = self.status(cycle_id)
        if cycle.outcome.is_terminal:
            return cycle
        cycle = cycle.model_copy(update={"cancel_requested": True})
        self._cycles[cycle_id] = cycle
        event = self._cancel_events.get(cycle_id)
        if event is not None:
            event.set()
        logger.info("sync_cycle_cancel_requested", cycle_id=cycle_id)
        return cycle

    async def wait(self, cycle_id: str, timeout: float | None = None) -> SyncCycle:
        """Wait for a cycle to finish and return its final snapshot."""
        self.status(cycle_id)
        task = self._tasks.get(cycle_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise SyncTimeoutError(
                    message=f"Cycle {cycle_id} still running after {timeout}s"
                ) from exc
        return self.status(cycle_id)

    @property
    def running_cycle_id(self) -> str | None:
        for cycle_id, task in self._tasks.items():
            if not task.done():
                return cycle_id
        return None

    def last_cycle(self) -> SyncCycle | None:
        if not self._cycles:
            return None
        return next(reversed(self._cycles.values()))

    async def run_schedule(
        self,
        interval_seconds: float,
        sync_type: SyncType = SyncType.FULL,
    ) -> None:
        """Trigger a cycle every *interval_seconds* until cancelled.

        A tick that finds a cycle still running is skipped.
        """
        logger.info("sync_schedule_started", interval_seconds=interval_seconds)
        while True:
            try:
                self.trigger(sync_type)
            except CycleInProgressError as exc:
                logger.info("sync_schedule_tick_skipped", running_cycle=exc.cycle_id)
            await asyncio.sleep(interval_seconds)

    async def shutdown(self) -> None:
        """Cancel any running cycle and wait for its task to unwind."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for cycle_id in list(self._cancel_events):
            self._cancel_events[cycle_id].set()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- Internals -------------------------------------------------------------

    async def _run(self, cycle: SyncCycle, cancel_event: asyncio.Event) -> SyncCycle:
        try:
            return await self._orchestrator.run_cycle(
                cycle, cancel_event=cancel_event, publish=self._publish
            )
        except Exception as exc:
            logger.exception("sync_cycle_crashed", cycle_id=cycle.cycle_id, error=str(exc))
            latest = self._cycles.get(cycle.cycle_id, cycle)
            failed = latest.model_copy(update={
                "outcome": CycleOutcome.FAILED,
                "finished_at": datetime.now(tz=timezone.utc),  # noqa: UP017
                "errors": [*latest.errors, f"cycle crashed: {exc!r}"],
            })
            self._publish(failed)
            return failed
        finally:
            self._cancel_events.pop(cycle.cycle_id, None)

    def _publish(self, snapshot: SyncCycle) -> None:
        current = self._cycles.get(snapshot.cycle_id)
        if current is not None and current.cancel_requested and not snapshot.cancel_requested:
            snapshot = snapshot.model_copy(update={"cancel_requested": True})
        self._cycles[snapshot.cycle_id] = snapshot

    def _trim_history(self) -> None:
        while len(self._cycles) > self._max_history:
            oldest_id = next(iter(self._cycles))
            task = self._tasks.get(oldest_id)
            if task is not None and not task.done():
                break
            self._cycles.pop(oldest_id)
            self._tasks.pop(oldest_id, None)
