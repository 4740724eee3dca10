"""Trending ranking models."""

from __future__ import annotations

import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class Timeframe(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """The window of upcoming shows considered before scoring."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def days(self) -> int:
        return {"day": 1, "week": 7, "month": 30}[self.value]


class TrendingShow(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int
    show_id: int
    name: str
    artist_id: int
    date: datetime.date
    total_votes: int
    days_until: int
    score: float


class TrendingArtist(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int
    artist_id: int
    name: str
    slug: str
    followers: int
    upcoming_shows: int
    total_votes: int
    score: float
