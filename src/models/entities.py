"""Core domain entities persisted by setlistsync.

Defines enums and Pydantic v2 models for artists, venues, shows, songs,
setlists, setlist entries and votes.  All models use frozen config; the
store hands out plain row dicts and callers lift them into these models
with ``Model.model_validate(row)`` when they need typed access.

Key relationships:
    - Show belongs to one Artist and optionally one Venue; unique on
      (artist_id, date, venue_id)
    - Setlist belongs to one Show; unique on (show_id, type)
    - SetlistEntry belongs to one Setlist, references one Song; unique on
      (setlist_id, position); carries denormalized vote counters
    - Vote is unique on (voter_id, entry_id) and is the source of truth
      for the counters on its SetlistEntry
"""

from __future__ import annotations

import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityType(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Store tables, used as the ``entity_type`` argument of the store."""

    ARTIST = "artist"
    VENUE = "venue"
    SHOW = "show"
    SONG = "song"
    SETLIST = "setlist"
    SETLIST_ENTRY = "setlist_entry"
    VOTE = "vote"


class ShowStatus(str, Enum):  # noqa: UP042
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SetlistType(str, Enum):  # noqa: UP042
    PREDICTED = "predicted"
    ACTUAL = "actual"


class VoteDirection(str, Enum):  # noqa: UP042
    UP = "up"
    DOWN = "down"

    @property
    def counter_field(self) -> str:
        """The SetlistEntry column this direction is tallied in."""
        return "upvotes" if self is VoteDirection.UP else "downvotes"


class Artist(BaseModel):
    """A performer.  ``slug`` is assigned on first insert and never rewritten."""

    model_config = ConfigDict(frozen=True)

    id: int
    external_id: str | None = None      # Catalog source id (unique when present)
    name: str
    slug: str
    image_url: str | None = None
    followers: int = 0                  # Overwritten on every sync pass
    verified: bool = False
    genres: list[str] = Field(default_factory=list)


class Venue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    external_id: str | None = None
    name: str
    slug: str
    city: str
    state: str | None = None
    country: str
    capacity: int | None = None


class Show(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    external_id: str | None = None      # Event source (ticketing) id
    artist_id: int
    venue_id: int | None = None
    name: str
    date: datetime.date
    start_time: str | None = None
    status: ShowStatus = ShowStatus.UPCOMING
    ticket_url: str | None = None


class Song(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    external_id: str | None = None
    title: str
    artist_name: str


class Setlist(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    show_id: int
    type: SetlistType
    is_locked: bool = False


class SetlistEntry(BaseModel):
    """A song's slot in a setlist, with its cached vote tally."""

    model_config = ConfigDict(frozen=True)

    id: int
    setlist_id: int
    song_id: int
    position: int = Field(ge=1)
    upvotes: int = 0
    downvotes: int = 0

    @property
    def net_votes(self) -> int:
        return self.upvotes - self.downvotes


class Vote(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    voter_id: str
    entry_id: int
    direction: VoteDirection

    @field_validator("voter_id")
    @classmethod
    def _voter_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("voter_id must not be blank")
        return value
