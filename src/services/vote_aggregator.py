"""Vote state machine and denormalized counter maintenance.

# ─── STATE MACHINE (per voter × setlist entry) ────────────────────────
#
#                 cast up                     cast down
#    NoVote  ─────────────►  Upvoted  ◄──────────────────►  Downvoted
#      ▲                        │        (switch: Replace)      │
#      └──── cast same again ───┴───────────────────────────────┘
#                (retraction: Decrement)
#
#   none → X          Increment(X)        insert Vote
#   X    → X          Decrement(X)        delete Vote (toggle off)
#   X    → Y          Replace(X, Y)       update Vote direction
#
# plan_transition() is pure: it returns the counter adjustment as a
# value and the aggregator executes it against the store.  A Replace is
# sent as ONE adjust_counters() call carrying both deltas, so a reader
# can never observe the old and the new vote counted at once.
#
# Counters are a cache of the Vote rows.  audit_counters() recomputes
# them from the rows and repairs any drift.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from src.interfaces.store_provider import DuplicateKeyError, IStoreProvider
from src.models.entities import EntityType, VoteDirection
from src.resilience.rate_limiter import VoterRateLimiter
from src.utils.concurrency import KeyedLock
from src.utils.errors import (
    NotFoundError,
    SetlistLockedError,
    UnauthorizedError,
    ValidationError,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Increment:
    field: str

    def deltas(self) -> dict[str, int]:
        return {self.field: 1}


@dataclass(frozen=True)
class Decrement:
    field: str

    def deltas(self) -> dict[str, int]:
        return {self.field: -1}


@dataclass(frozen=True)
class Replace:
    old_field: str
    new_field: str

    def deltas(self) -> dict[str, int]:
        return {self.old_field: -1, self.new_field: 1}


CounterAdjustment = Union[Increment, Decrement, Replace]


@dataclass(frozen=True)
class Transition:
    """The voter's direction after the vote, and the counter change it implies."""

    new_direction: VoteDirection | None
    adjustment: CounterAdjustment


@dataclass(frozen=True)
class VoteResult:
    entry_id: int
    upvotes: int
    downvotes: int
    user_vote: VoteDirection | None

    @property
    def net_votes(self) -> int:
        return self.upvotes - self.downvotes


def plan_transition(
    existing: VoteDirection | None,
    requested: VoteDirection,
) -> Transition:
    """Return the next state and counter adjustment for one cast vote."""
    if existing is None:
        return Transition(requested, Increment(requested.counter_field))
    if existing is requested:
        return Transition(None, Decrement(existing.counter_field))
    return Transition(requested, Replace(existing.counter_field, requested.counter_field))


class VoteAggregator:
    """Applies votes to the store and keeps entry counters in step.

    Parameters
    ----------
    store:
        The persistent store.
    rate_limiter:
        Optional per-voter limiter; rejections surface as RateLimitedError.
    locks:
        Per-(voter, entry) lock map so one voter's double-click is applied
        in order.  Different voters never wait on each other.
    """

    def __init__(
        self,
        store: IStoreProvider,
        rate_limiter: VoterRateLimiter | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._locks = locks or KeyedLock()

    async def cast_vote(
        self,
        voter_id: str,
        entry_id: int,
        direction: VoteDirection | str,
    ) -> VoteResult:
        """Cast, switch or retract a vote and return the entry's new counts.

        Raises
        ------
        UnauthorizedError
            No voter identity.
        RateLimitedError
            The voter is voting faster than the configured rate.
        NotFoundError
            Unknown setlist entry.
        SetlistLockedError
            The entry's setlist no longer accepts votes.
        """
        voter_id = (voter_id or "").strip()
        if not voter_id:
            raise UnauthorizedError("Voter identity required")
        try:
            requested = VoteDirection(direction)
        except ValueError as exc:
            raise ValidationError(message=f"Unknown vote direction: {direction!r}") from exc

        if self._rate_limiter is not None:
            self._rate_limiter.check(voter_id)

        await self._ensure_votable(entry_id)

        async with self._locks.hold((voter_id, entry_id)):
            # One re-plan covers a vote row written by another process
            # between our read and our insert.
            for _ in range(2):
                existing = await self._current_vote(voter_id, entry_id)
                transition = plan_transition(
                    VoteDirection(existing["direction"]) if existing else None,
                    requested,
                )
                try:
                    await self._apply_vote_row(voter_id, entry_id, existing, transition)
                except DuplicateKeyError:
                    continue
                break
            else:
                raise ValidationError(message="Vote changed concurrently, please retry")

            entry = await self._store.adjust_counters(entry_id, transition.adjustment.deltas())

        if entry is None:
            raise NotFoundError("setlist_entry", entry_id)

        logger.info(
            "vote_applied",
            entry_id=entry_id,
            adjustment=type(transition.adjustment).__name__,
            upvotes=entry["upvotes"],
            downvotes=entry["downvotes"],
        )
        return VoteResult(
            entry_id=entry_id,
            upvotes=entry["upvotes"],
            downvotes=entry["downvotes"],
            user_vote=transition.new_direction,
        )

    async def get_votes(
        self,
        entry_ids: list[int],
        voter_id: str | None = None,
    ) -> dict[int, VoteResult]:
        """Return current counts (and the voter's direction, if given) per entry."""
        if not entry_ids:
            return {}
        entries = await self._store.query(EntityType.SETLIST_ENTRY, {"id__in": entry_ids})
        user_votes: dict[int, VoteDirection] = {}
        if voter_id and voter_id.strip():
            rows = await self._store.query(
                EntityType.VOTE,
                {"voter_id": voter_id.strip(), "entry_id__in": entry_ids},
            )
            user_votes = {row["entry_id"]: VoteDirection(row["direction"]) for row in rows}
        return {
            entry["id"]: VoteResult(
                entry_id=entry["id"],
                upvotes=entry["upvotes"],
                downvotes=entry["downvotes"],
                user_vote=user_votes.get(entry["id"]),
            )
            for entry in entries
        }

    async def lock_setlist(self, setlist_id: int) -> dict[str, Any]:
        """Stop a setlist from accepting further votes."""
        row = await self._store.update(EntityType.SETLIST, setlist_id, {"is_locked": True})
        if row is None:
            raise NotFoundError("setlist", setlist_id)
        logger.info("setlist_locked", setlist_id=setlist_id)
        return row

    async def audit_counters(self, entry_ids: list[int] | None = None) -> list[dict[str, Any]]:
        """Recompute counters from Vote rows; returns the entries that had drifted."""
        repaired = await self._store.recount_counters(entry_ids)
        for item in repaired:
            logger.warning(
                "vote_counter_drift",
                entry_id=item["id"],
                previous_upvotes=item["previous_upvotes"],
                previous_downvotes=item["previous_downvotes"],
                upvotes=item["upvotes"],
                downvotes=item["downvotes"],
            )
        return repaired

    # -- Private helpers -------------------------------------------------------

    async def _ensure_votable(self, entry_id: int) -> None:
        entry = await self._store.get(EntityType.SETLIST_ENTRY, entry_id)
        if entry is None:
            raise NotFoundError("setlist_entry", entry_id)
        setlist = await self._store.get(EntityType.SETLIST, entry["setlist_id"])
        if setlist is None:
            raise NotFoundError("setlist", entry["setlist_id"])
        if setlist["is_locked"]:
            raise SetlistLockedError(setlist["id"])

    async def _current_vote(self, voter_id: str, entry_id: int) -> dict[str, Any] | None:
        rows = await self._store.query(
            EntityType.VOTE, {"voter_id": voter_id, "entry_id": entry_id}, limit=1
        )
        return rows[0] if rows else None

    async def _apply_vote_row(
        self,
        voter_id: str,
        entry_id: int,
        existing: dict[str, Any] | None,
        transition: Transition,
    ) -> None:
        if existing is None:
            await self._store.insert(
                EntityType.VOTE,
                {"voter_id": voter_id, "entry_id": entry_id, "direction": transition.new_direction},
            )
        elif transition.new_direction is None:
            await self._store.delete(EntityType.VOTE, existing["id"])
        else:
            await self._store.update(
                EntityType.VOTE, existing["id"], {"direction": transition.new_direction}
            )
