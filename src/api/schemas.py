"""Pydantic request/response schemas for the setlistsync API.

Defines the public contract for the vote, sync, trending and health
endpoints.

Convention: Request schemas end with "Request", response schemas end
with "Response".  ``Field(...)`` adds constraints and descriptions for
the generated OpenAPI docs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.models.entities import VoteDirection
from src.models.sync import CycleOutcome, EntityCounts, SyncCycle, SyncType
from src.models.trending import Timeframe, TrendingArtist, TrendingShow


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------


class CastVoteRequest(BaseModel):
    """A single vote from the web layer."""

    voter_id: str = Field(description="Authenticated user id; blank is rejected with 401")
    setlist_entry_id: int = Field(ge=1)
    direction: VoteDirection


class VoteCountsResponse(BaseModel):
    """Counts for one setlist entry after (or without) a vote."""

    entry_id: int
    upvotes: int
    downvotes: int
    net_votes: int
    user_vote: VoteDirection | None = None


class VoteCountsListResponse(BaseModel):
    entries: list[VoteCountsResponse]


class LockSetlistResponse(BaseModel):
    setlist_id: int
    is_locked: bool


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class TriggerSyncRequest(BaseModel):
    sync_type: SyncType = SyncType.FULL


class SyncCycleResponse(BaseModel):
    """Operator view of one sync cycle."""

    cycle_id: str
    sync_type: SyncType
    outcome: CycleOutcome
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    counts: dict[str, EntityCounts] = Field(default_factory=dict)
    attempted: int = 0
    failed: int = 0
    query_failures: int = 0
    errors: list[str] = Field(default_factory=list)
    verification: dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False

    @classmethod
    def from_cycle(cls, cycle: SyncCycle) -> SyncCycleResponse:
        return cls(
            **cycle.model_dump(),
            duration_seconds=cycle.duration_seconds,
            attempted=cycle.attempted,
            failed=cycle.failed,
        )


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------


class TrendingResponse(BaseModel):
    entity_type: Literal["shows", "artists"]
    timeframe: Timeframe
    results: list[TrendingShow] | list[TrendingArtist]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Application health check response."""

    status: str
    version: str
    store: dict[str, int]
    sources: dict[str, Any]
    last_cycle: dict[str, Any] | None = None
