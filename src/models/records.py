"""External record shapes: what the source clients return and the reconciler consumes.

A :class:`RawRecord` is the provider payload exactly as received, tagged
with its source and kind.  The reconciler lifts it into one of the
normalized record models below via the ``from_*`` constructors, which is
where provider field names (Spotify ``followers.total``, Ticketmaster
``_embedded.venues[0]``) are understood.  Those constructors raise
:class:`~src.utils.errors.ValidationError` for payloads that cannot be
normalized, e.g. an event without a parseable date.
"""

from __future__ import annotations

import contextlib
import datetime
from collections.abc import Iterator
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.models.entities import ShowStatus
from src.utils.errors import ValidationError

# Catalog artists above this follower count are flagged as verified.
VERIFIED_FOLLOWER_THRESHOLD = 100_000


@contextlib.contextmanager
def _payload_shape(what: str, provider: str) -> Iterator[None]:
    """Re-raise lookups on a wrongly shaped payload as :class:`ValidationError`."""
    try:
        yield
    except (AttributeError, TypeError, KeyError, IndexError) as exc:
        raise ValidationError(
            message=f"Malformed {what} payload: {exc}",
            provider_name=provider,
        ) from exc

# Ticketmaster ``dates.status.code`` → show lifecycle.
_EVENT_STATUS_MAP: dict[str, ShowStatus] = {
    "onsale": ShowStatus.UPCOMING,
    "offsale": ShowStatus.UPCOMING,
    "rescheduled": ShowStatus.UPCOMING,
    "cancelled": ShowStatus.CANCELLED,
    "canceled": ShowStatus.CANCELLED,
    "postponed": ShowStatus.CANCELLED,
}


class RecordKind(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    ARTIST = "artist"
    EVENT = "event"
    TRACK = "track"


class RawRecord(BaseModel):
    """A provider payload tagged with where it came from."""

    model_config = ConfigDict(frozen=True)

    source: str                     # "spotify" / "ticketmaster"
    kind: RecordKind
    external_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ArtistRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str | None = None
    name: str = Field(min_length=1)
    image_url: str | None = None
    genres: list[str] = Field(default_factory=list)
    followers: int = Field(default=0, ge=0)
    verified: bool = False

    @classmethod
    def from_catalog(cls, payload: dict[str, Any]) -> ArtistRecord:
        """Normalize a Spotify artist object."""
        with _payload_shape("catalog artist", "spotify"):
            name = (payload.get("name") or "").strip()
            if not name:
                raise ValidationError(message="Catalog artist has no name", provider_name="spotify")
            followers = int((payload.get("followers") or {}).get("total") or 0)
            images = payload.get("images") or []
            image_url = images[0].get("url") if images else None
            genres = list(payload.get("genres") or [])
            external_id = payload.get("id")
        return cls(
            external_id=external_id,
            name=name,
            image_url=image_url,
            genres=genres,
            followers=followers,
            verified=followers > VERIFIED_FOLLOWER_THRESHOLD,
        )


class TrackRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str | None = None
    title: str = Field(min_length=1)
    artist_name: str

    @classmethod
    def from_catalog(cls, payload: dict[str, Any], fallback_artist: str = "Unknown Artist") -> TrackRecord:
        """Normalize a Spotify track object."""
        with _payload_shape("catalog track", "spotify"):
            title = (payload.get("name") or "").strip()
            if not title:
                raise ValidationError(message="Catalog track has no title", provider_name="spotify")
            artists = payload.get("artists") or []
            artist_name = (artists[0].get("name") if artists else None) or fallback_artist
            external_id = payload.get("id")
        return cls(external_id=external_id, title=title, artist_name=artist_name)


class VenueRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str | None = None
    name: str = Field(min_length=1)
    city: str = "Unknown"
    state: str | None = None
    country: str = "Unknown"
    capacity: int | None = None

    @classmethod
    def from_event_source(cls, payload: dict[str, Any]) -> VenueRecord:
        """Normalize a Ticketmaster venue object."""
        with _payload_shape("venue", "ticketmaster"):
            name = (payload.get("name") or "").strip()
            if not name:
                raise ValidationError(message="Venue has no name", provider_name="ticketmaster")
            address = payload.get("address") or {}
            city = payload.get("city") or {}
            state = payload.get("state") or {}
            country = payload.get("country") or {}
            capacity = payload.get("capacity")
            fields = {
                "external_id": payload.get("id"),
                "name": name,
                "city": city.get("name") or address.get("line1") or "Unknown",
                "state": state.get("stateCode") or state.get("name"),
                "country": country.get("countryCode") or country.get("name") or "Unknown",
                "capacity": int(capacity) if capacity is not None else None,
            }
        return cls(**fields)


class EventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_id: str | None = None
    name: str
    date: datetime.date
    start_time: str | None = None
    status: ShowStatus = ShowStatus.UPCOMING
    ticket_url: str | None = None
    performer_name: str | None = None
    venue: VenueRecord | None = None

    @classmethod
    def from_event_source(
        cls,
        payload: dict[str, Any],
        today: datetime.date | None = None,
    ) -> EventRecord:
        """Normalize a Ticketmaster event object.

        ``today`` decides whether a still-"upcoming" event in the past is
        reported as completed; it defaults to the current UTC date.
        """
        with _payload_shape("event", "ticketmaster"):
            dates = payload.get("dates") or {}
            start = dates.get("start") or {}
            raw_date = start.get("localDate")
            status_code = str((dates.get("status") or {}).get("code") or "").lower()
            embedded = payload.get("_embedded") or {}
            venues = embedded.get("venues") or []
            attractions = embedded.get("attractions") or []
            performer = (attractions[0].get("name") or "").strip() if attractions else ""
            name = (payload.get("name") or performer or "Untitled show").strip()
        if not raw_date:
            raise ValidationError(
                message=f"Event {payload.get('id')} has no date",
                provider_name="ticketmaster",
            )
        try:
            event_date = datetime.date.fromisoformat(raw_date)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                message=f"Event {payload.get('id')} has malformed date {raw_date!r}",
                provider_name="ticketmaster",
            ) from exc

        status = _EVENT_STATUS_MAP.get(status_code, ShowStatus.UPCOMING)
        today = today or datetime.datetime.now(tz=datetime.timezone.utc).date()  # noqa: UP017
        if status is ShowStatus.UPCOMING and event_date < today:
            status = ShowStatus.COMPLETED

        return cls(
            external_id=payload.get("id"),
            name=name,
            date=event_date,
            start_time=start.get("localTime"),
            status=status,
            ticket_url=payload.get("url"),
            performer_name=performer or None,
            venue=VenueRecord.from_event_source(venues[0]) if venues else None,
        )
