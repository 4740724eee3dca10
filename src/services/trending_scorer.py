"""Trending rankings for shows and artists.

Scores are recomputed from current store state on every read; nothing is
maintained incrementally.

    show score   = total_votes / ln(days_until + 1)
                   days_until = max(1, ceil(show_date - now) in days)

    artist score = followers * 0.1
                 + votes on the artist's upcoming shows * vote_weight
                 + upcoming show count * show_boost

The timeframe selects which upcoming shows (and so which votes) enter the
calculation before anything is scored.  Results come back as a one-shot
iterator capped at the requested limit.
"""

from __future__ import annotations

import datetime
import math
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from itertools import islice
from typing import Any

from src.interfaces.store_provider import IStoreProvider
from src.models.entities import EntityType, ShowStatus
from src.models.trending import Timeframe, TrendingArtist, TrendingShow
from src.utils.errors import ValidationError
from src.utils.logging import get_logger

logger = get_logger(__name__)

_FOLLOWER_WEIGHT = 0.1
_SECONDS_PER_DAY = 86_400


def days_until(show_date: datetime.date, now: datetime.datetime) -> int:
    """Whole days from *now* to the start of *show_date* (UTC), never below 1."""
    start = datetime.datetime.combine(show_date, datetime.time.min, tzinfo=datetime.timezone.utc)  # noqa: UP017
    delta = (start - now).total_seconds() / _SECONDS_PER_DAY
    return max(1, math.ceil(delta))


def show_score(total_votes: int, days: int) -> float:
    """Recency-weighted vote score; closer shows score higher for equal votes."""
    return total_votes / math.log(max(1, days) + 1)


def artist_score(
    followers: int,
    total_votes: int,
    upcoming_shows: int,
    vote_weight: float = 75.0,
    show_boost: float = 1000.0,
) -> float:
    return followers * _FOLLOWER_WEIGHT + total_votes * vote_weight + upcoming_shows * show_boost


class TrendingScorer:
    """Ranks upcoming shows and their artists from current vote totals.

    Parameters
    ----------
    store:
        The persistent store.
    vote_weight, show_boost:
        Artist score weights.
    max_limit:
        Largest ``limit`` a caller may request.
    clock:
        Returns the current aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        store: IStoreProvider,
        vote_weight: float = 75.0,
        show_boost: float = 1000.0,
        max_limit: int = 50,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self._store = store
        self._vote_weight = vote_weight
        self._show_boost = show_boost
        self._max_limit = max_limit
        self._clock = clock or (lambda: datetime.datetime.now(tz=datetime.timezone.utc))  # noqa: UP017

    async def rank_shows(
        self,
        timeframe: Timeframe = Timeframe.WEEK,
        limit: int = 10,
    ) -> Iterator[TrendingShow]:
        self._check_limit(limit)
        now = self._clock()
        shows = await self._upcoming_shows(now, timeframe)
        totals = await self._vote_totals(show["id"] for show in shows)

        scored = []
        for show in shows:
            show_date = datetime.date.fromisoformat(show["date"])
            days = days_until(show_date, now)
            votes = totals.get(show["id"], 0)
            scored.append((show_score(votes, days), show_date, votes, days, show))
        # Highest score first; ties go to the earlier show, then more votes.
        scored.sort(key=lambda item: (-item[0], item[1], -item[2], item[4]["id"]))

        logger.debug("trending_shows_scored", timeframe=timeframe.value, candidates=len(scored))
        return self._take(
            scored,
            limit,
            lambda rank, item: TrendingShow(
                rank=rank,
                show_id=item[4]["id"],
                name=item[4]["name"],
                artist_id=item[4]["artist_id"],
                date=item[1],
                total_votes=item[2],
                days_until=item[3],
                score=round(item[0], 4),
            ),
        )

    async def rank_artists(
        self,
        timeframe: Timeframe = Timeframe.WEEK,
        limit: int = 10,
    ) -> Iterator[TrendingArtist]:
        """Rank artists that have at least one upcoming show inside *timeframe*."""
        self._check_limit(limit)
        shows = await self._upcoming_shows(self._clock(), timeframe)
        totals = await self._vote_totals(show["id"] for show in shows)

        show_counts: dict[int, int] = defaultdict(int)
        vote_counts: dict[int, int] = defaultdict(int)
        for show in shows:
            show_counts[show["artist_id"]] += 1
            vote_counts[show["artist_id"]] += totals.get(show["id"], 0)

        artists = await self._store.query(EntityType.ARTIST, {"id__in": list(show_counts)})
        scored = []
        for artist in artists:
            score = artist_score(
                artist["followers"],
                vote_counts[artist["id"]],
                show_counts[artist["id"]],
                self._vote_weight,
                self._show_boost,
            )
            scored.append((score, artist))
        scored.sort(key=lambda item: (-item[0], -item[1]["followers"], item[1]["id"]))

        return self._take(
            scored,
            limit,
            lambda rank, item: TrendingArtist(
                rank=rank,
                artist_id=item[1]["id"],
                name=item[1]["name"],
                slug=item[1]["slug"],
                followers=item[1]["followers"],
                upcoming_shows=show_counts[item[1]["id"]],
                total_votes=vote_counts[item[1]["id"]],
                score=round(item[0], 4),
            ),
        )

    # -- Private helpers -------------------------------------------------------

    def _check_limit(self, limit: int) -> None:
        if not 1 <= limit <= self._max_limit:
            raise ValidationError(message=f"limit must be between 1 and {self._max_limit}, got {limit}")

    async def _upcoming_shows(
        self, now: datetime.datetime, timeframe: Timeframe
    ) -> list[dict[str, Any]]:
        today = now.date()
        return await self._store.query(
            EntityType.SHOW,
            {
                "status": ShowStatus.UPCOMING,
                "date__gte": today,
                "date__lte": today + datetime.timedelta(days=timeframe.days),
            },
            order_by=["date"],
        )

    async def _vote_totals(self, show_ids: Iterable[int]) -> dict[int, int]:
        """Sum up + down votes over every entry of every setlist of each show."""
        ids = list(show_ids)
        if not ids:
            return {}
        setlists = await self._store.query(EntityType.SETLIST, {"show_id__in": ids})
        setlist_show = {setlist["id"]: setlist["show_id"] for setlist in setlists}
        if not setlist_show:
            return {}
        entries = await self._store.query(
            EntityType.SETLIST_ENTRY, {"setlist_id__in": list(setlist_show)}
        )
        totals: dict[int, int] = defaultdict(int)
        for entry in entries:
            totals[setlist_show[entry["setlist_id"]]] += entry["upvotes"] + entry["downvotes"]
        return dict(totals)

    @staticmethod
    def _take(
        scored: list[Any],
        limit: int,
        build: Callable[[int, Any], Any],
    ) -> Iterator[Any]:
        for rank, item in enumerate(islice(scored, limit), start=1):
            yield build(rank, item)
