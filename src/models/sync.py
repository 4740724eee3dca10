"""Sync cycle state models.

A :class:`SyncCycle` is the operator-facing snapshot of one run of the
sync orchestrator: what was asked for, how far it got, per-entity counts
and the final outcome.  Snapshots are frozen; the orchestrator publishes a
new one via ``model_copy(update={...})`` each time progress is made, and
the :class:`~src.pipeline.cycle_registry.CycleRegistry` keeps the latest.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SyncType(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """What a cycle discovers.

    FULL runs catalog discovery, event discovery and the verify phase;
    ARTISTS and SHOWS run one discovery side only.
    """

    FULL = "full"
    ARTISTS = "artists"
    SHOWS = "shows"


class CycleOutcome(str, Enum):  # noqa: UP042
    PENDING = "pending"
    RUNNING = "running"
    HEALTHY = "healthy"
    DEGRADED = "degraded"       # failed / attempted above threshold
    FAILED = "failed"           # a needed source's breaker was open all cycle
    TIMEOUT = "timeout"         # deadline hit; partial progress retained
    CANCELLED = "cancelled"     # operator requested cancellation

    @property
    def is_terminal(self) -> bool:
        return self not in (CycleOutcome.PENDING, CycleOutcome.RUNNING)


class EntityCounts(BaseModel):
    """Per-entity-type reconciliation tallies."""

    model_config = ConfigDict(frozen=True)

    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.created + self.updated + self.skipped + self.failed


class SyncCycle(BaseModel):
    model_config = ConfigDict(frozen=True)

    cycle_id: str
    sync_type: SyncType
    outcome: CycleOutcome = CycleOutcome.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    counts: dict[str, EntityCounts] = Field(default_factory=dict)
    query_failures: int = 0
    errors: list[str] = Field(default_factory=list)
    verification: dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False

    @property
    def attempted(self) -> int:
        return sum(c.attempted for c in self.counts.values())

    @property
    def failed(self) -> int:
        return sum(c.failed for c in self.counts.values())

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(tz=timezone.utc)  # noqa: UP017
        return (end - self.started_at).total_seconds()
