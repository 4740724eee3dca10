"""FastAPI API routes for setlistsync.

Provides REST endpoints for voting, sync cycle control, trending reads and
health.  Service dependencies are resolved from ``app.state`` via
FastAPI's ``Depends`` using the ``Annotated`` pattern.

# ─── API ROUTE MAP ────────────────────────────────────────────────────
#
# Endpoint                              Method  Description
# ─────────────────────────────────────────────────────────────────────
# /api/v1/votes                         POST    Cast / switch / retract a vote
# /api/v1/votes                         GET     Counts (+ voter's direction)
# /api/v1/setlists/{id}/lock            POST    Lock a setlist (operator)
# /api/v1/sync/trigger                  POST    Start a sync cycle (operator)
# /api/v1/sync/{cycle_id}               GET     Cycle status and counts
# /api/v1/sync/{cycle_id}               DELETE  Request cycle cancellation
# /api/v1/trending                      GET     Ranked shows or artists
# /api/v1/health                        GET     Store, source and cycle health
#
# Operator endpoints require the X-Sync-Secret header when SYNC_SECRET is
# configured.  Application errors are turned into JSON bodies by
# ErrorHandlingMiddleware (see middleware.py for the status code map).
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import secrets
from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request

from src.api.schemas import (
    CastVoteRequest,
    HealthResponse,
    LockSetlistResponse,
    SyncCycleResponse,
    TrendingResponse,
    TriggerSyncRequest,
    VoteCountsListResponse,
    VoteCountsResponse,
)
from src.config.settings import Settings
from src.interfaces.source_client import ISourceClient
from src.interfaces.store_provider import IStoreProvider
from src.models.entities import EntityType
from src.models.trending import Timeframe
from src.pipeline.cycle_registry import CycleRegistry
from src.services.trending_scorer import TrendingScorer
from src.services.vote_aggregator import VoteAggregator, VoteResult
from src.utils.errors import UnauthorizedError
from src.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Dependency injection helpers -- resolve singletons from app.state
# ---------------------------------------------------------------------------


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_store(request: Request) -> IStoreProvider:
    return request.app.state.store


def _get_vote_aggregator(request: Request) -> VoteAggregator:
    return request.app.state.vote_aggregator


def _get_trending_scorer(request: Request) -> TrendingScorer:
    return request.app.state.trending_scorer


def _get_cycle_registry(request: Request) -> CycleRegistry:
    return request.app.state.cycle_registry


def _get_sources(request: Request) -> dict[str, ISourceClient]:
    return getattr(request.app.state, "sources", {})


SettingsDep = Annotated[Settings, Depends(_get_settings)]
StoreDep = Annotated[IStoreProvider, Depends(_get_store)]
VotesDep = Annotated[VoteAggregator, Depends(_get_vote_aggregator)]
TrendingDep = Annotated[TrendingScorer, Depends(_get_trending_scorer)]
RegistryDep = Annotated[CycleRegistry, Depends(_get_cycle_registry)]
SourcesDep = Annotated[dict[str, ISourceClient], Depends(_get_sources)]


def require_sync_secret(
    settings: SettingsDep,
    x_sync_secret: Annotated[str | None, Header()] = None,
) -> None:
    """Reject operator calls without the shared secret, when one is configured."""
    expected = settings.sync_secret
    if not expected:
        return
    if not x_sync_secret or not secrets.compare_digest(x_sync_secret, expected):
        raise UnauthorizedError("Invalid or missing sync secret")


OperatorDep = Depends(require_sync_secret)


def _counts_response(result: VoteResult) -> VoteCountsResponse:
    return VoteCountsResponse(
        entry_id=result.entry_id,
        upvotes=result.upvotes,
        downvotes=result.downvotes,
        net_votes=result.net_votes,
        user_vote=result.user_vote,
    )


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------


@router.post("/votes", response_model=VoteCountsResponse, summary="Cast a vote")
async def cast_vote(body: CastVoteRequest, votes: VotesDep) -> VoteCountsResponse:
    """Cast, switch or retract (same direction twice) a vote on a setlist entry."""
    result = await votes.cast_vote(body.voter_id, body.setlist_entry_id, body.direction)
    return _counts_response(result)


@router.get("/votes", response_model=VoteCountsListResponse, summary="Read vote counts")
async def get_votes(
    votes: VotesDep,
    entry_ids: Annotated[list[int], Query(min_length=1, max_length=200)],
    voter_id: str | None = None,
) -> VoteCountsListResponse:
    results = await votes.get_votes(entry_ids, voter_id)
    return VoteCountsListResponse(
        entries=[_counts_response(results[eid]) for eid in entry_ids if eid in results]
    )


@router.post(
    "/setlists/{setlist_id}/lock",
    response_model=LockSetlistResponse,
    dependencies=[OperatorDep],
    summary="Lock a setlist against further votes",
)
async def lock_setlist(setlist_id: int, votes: VotesDep) -> LockSetlistResponse:
    row = await votes.lock_setlist(setlist_id)
    return LockSetlistResponse(setlist_id=row["id"], is_locked=row["is_locked"])


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post(
    "/sync/trigger",
    response_model=SyncCycleResponse,
    status_code=202,
    dependencies=[OperatorDep],
    summary="Start a sync cycle",
)
async def trigger_sync(
    registry: RegistryDep,
    body: TriggerSyncRequest | None = None,
) -> SyncCycleResponse:
    request = body or TriggerSyncRequest()
    cycle = registry.trigger(request.sync_type)
    return SyncCycleResponse.from_cycle(cycle)


@router.get(
    "/sync/{cycle_id}",
    response_model=SyncCycleResponse,
    dependencies=[OperatorDep],
    summary="Sync cycle status",
)
async def sync_status(cycle_id: str, registry: RegistryDep) -> SyncCycleResponse:
    return SyncCycleResponse.from_cycle(registry.status(cycle_id))


@router.delete(
    "/sync/{cycle_id}",
    response_model=SyncCycleResponse,
    dependencies=[OperatorDep],
    summary="Cancel a running sync cycle",
)
async def cancel_sync(cycle_id: str, registry: RegistryDep) -> SyncCycleResponse:
    return SyncCycleResponse.from_cycle(registry.cancel(cycle_id))


# ---------------------------------------------------------------------------
# Trending
# ---------------------------------------------------------------------------


@router.get("/trending", response_model=TrendingResponse, summary="Trending shows or artists")
async def trending(
    scorer: TrendingDep,
    entity_type: Literal["shows", "artists"] = "shows",
    timeframe: Timeframe = Timeframe.WEEK,
    limit: Annotated[int, Query(ge=1)] = 10,
) -> TrendingResponse:
    if entity_type == "shows":
        ranked: list[Any] = list(await scorer.rank_shows(timeframe, limit))
    else:
        ranked = list(await scorer.rank_artists(timeframe, limit))
    return TrendingResponse(entity_type=entity_type, timeframe=timeframe, results=ranked)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Application health check")
async def health_check(
    request: Request,
    store: StoreDep,
    registry: RegistryDep,
    sources: SourcesDep,
) -> HealthResponse:
    """Return store row counts, source availability/breaker state and the last cycle."""
    counts = {
        entity_type.value: await store.count(entity_type)
        for entity_type in (EntityType.ARTIST, EntityType.VENUE, EntityType.SHOW, EntityType.VOTE)
    }
    source_status = {
        name: {
            "available": source.is_available(),
            **source.pipeline.get_stats(),
        }
        for name, source in sources.items()
    }
    last = registry.last_cycle()
    last_cycle = None
    if last is not None:
        last_cycle = {
            "cycle_id": last.cycle_id,
            "sync_type": last.sync_type.value,
            "outcome": last.outcome.value,
            "finished_at": last.finished_at.isoformat() if last.finished_at else None,
        }

    open_breakers = [
        name for name, status in source_status.items() if status["breaker"]["state"] == "open"
    ]
    return HealthResponse(
        status="degraded" if open_breakers else "ok",
        version=getattr(request.app, "version", "0.0.0"),
        store=counts,
        sources=source_status,
        last_cycle=last_cycle,
    )
