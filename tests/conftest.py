"""Shared pytest fixtures for the setlistsync test suite."""

from __future__ import annotations

import asyncio
import datetime
import itertools
from pathlib import Path
from typing import Any

import pytest

from src.config.loader import EventLocation
from src.config.settings import Settings
from src.interfaces.source_client import ICatalogSource, IEventSource
from src.models.entities import EntityType, SetlistType, ShowStatus
from src.models.records import RawRecord, RecordKind
from src.providers.store.sqlite_store_provider import SQLiteStoreProvider
from src.resilience import CircuitBreaker, ResiliencePipeline, RetryPolicy, TokenBucket
from src.utils.text_normalizer import slugify

# Fixed "today" used wherever a test needs a calendar.
TODAY = datetime.date(2026, 10, 18)
NOW = datetime.datetime(2026, 10, 18, 12, 0, tzinfo=datetime.timezone.utc)  # noqa: UP017


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Settings / resilience
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every source configured and no .env file involved."""
    return Settings(
        _env_file=None,
        spotify_client_id="client-id",
        spotify_client_secret="client-secret",
        ticketmaster_api_key="tm-key",
        store_db_path=str(tmp_path / "setlistsync.db"),
        config_path=str(tmp_path / "missing.yaml"),
    )


def make_pipeline(
    name: str = "test",
    max_attempts: int = 2,
    failure_threshold: int = 5,
    reset_timeout: float = 60.0,
) -> ResiliencePipeline:
    """A pipeline with an effectively unlimited bucket and zero backoff."""
    return ResiliencePipeline(
        name=name,
        limiter=TokenBucket(rate=1000.0, burst=1000, name=name, sleep=_no_sleep),
        breaker=CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
        ),
        retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.0, jitter=0.0),
        sleep=_no_sleep,
    )


@pytest.fixture
def pipeline() -> ResiliencePipeline:
    return make_pipeline()


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


def spotify_artist(
    artist_id: str | None,
    name: str,
    followers: int = 1000,
    genres: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "id": artist_id,
        "name": name,
        "followers": {"total": followers},
        "genres": genres or ["pop"],
        "images": [{"url": f"https://img.example/{artist_id}.jpg"}],
    }


def spotify_track(track_id: str | None, title: str, artist_name: str) -> dict[str, Any]:
    return {"id": track_id, "name": title, "artists": [{"name": artist_name}]}


def tm_event(
    event_id: str | None,
    performer: str | None,
    date: str = "2030-05-01",
    status: str = "onsale",
    venue_id: str | None = "KovZ1",
    venue_name: str | None = "The Fillmore",
    capacity: int | None = None,
) -> dict[str, Any]:
    embedded: dict[str, Any] = {}
    if performer is not None:
        embedded["attractions"] = [{"name": performer}]
    if venue_name is not None:
        venue: dict[str, Any] = {
            "id": venue_id,
            "name": venue_name,
            "city": {"name": "San Francisco"},
            "state": {"stateCode": "CA"},
            "country": {"countryCode": "US"},
        }
        if capacity is not None:
            venue["capacity"] = capacity
        embedded["venues"] = [venue]
    return {
        "id": event_id,
        "name": f"{performer or 'Unknown'} Live",
        "url": f"https://tickets.example/{event_id}",
        "dates": {
            "start": {"localDate": date, "localTime": "20:00:00"},
            "status": {"code": status},
        },
        "_embedded": embedded,
    }


# ---------------------------------------------------------------------------
# Fake sources (real pipeline, canned payloads)
# ---------------------------------------------------------------------------


class FakeCatalog(ICatalogSource):
    """Catalog source returning canned payloads through a real pipeline."""

    def __init__(
        self,
        pipeline: ResiliencePipeline | None = None,
        results: dict[str, list[dict[str, Any]]] | None = None,
        top_tracks: dict[str, list[dict[str, Any]]] | None = None,
        errors: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
        available: bool = True,
    ) -> None:
        self._pipeline = pipeline or make_pipeline("spotify")
        self.results = results or {}
        self.top_tracks = top_tracks or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.available = available
        self.searches: list[str] = []

    def get_provider_name(self) -> str:
        return "spotify"

    def is_available(self) -> bool:
        return self.available

    @property
    def pipeline(self) -> ResiliencePipeline:
        return self._pipeline

    async def search(self, query: str, page_size: int = 20) -> list[RawRecord]:
        async def _operation() -> list[RawRecord]:
            self.searches.append(query)
            if query in self.delays:
                await asyncio.sleep(self.delays[query])
            if query in self.errors:
                raise self.errors[query]
            return [
                RawRecord(source="spotify", kind=RecordKind.ARTIST, external_id=p.get("id"), payload=p)
                for p in self.results.get(query, [])[:page_size]
            ]

        return await self._pipeline.call(_operation, "search")

    async def fetch_detail(self, external_id: str) -> RawRecord:
        for payloads in self.results.values():
            for payload in payloads:
                if payload.get("id") == external_id:
                    return RawRecord(
                        source="spotify", kind=RecordKind.ARTIST, external_id=external_id, payload=payload
                    )
        raise KeyError(external_id)

    async def fetch_top_tracks(self, artist_external_id: str) -> list[RawRecord]:
        async def _operation() -> list[RawRecord]:
            return [
                RawRecord(source="spotify", kind=RecordKind.TRACK, external_id=t.get("id"), payload=t)
                for t in self.top_tracks.get(artist_external_id, [])
            ]

        return await self._pipeline.call(_operation, "top_tracks")


class FakeEvents(IEventSource):
    """Event source returning canned payloads through a real pipeline."""

    def __init__(
        self,
        pipeline: ResiliencePipeline | None = None,
        results: dict[str, list[dict[str, Any]]] | None = None,
        errors: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
        available: bool = True,
    ) -> None:
        self._pipeline = pipeline or make_pipeline("ticketmaster")
        self.results = results or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.available = available

    def get_provider_name(self) -> str:
        return "ticketmaster"

    def is_available(self) -> bool:
        return self.available

    @property
    def pipeline(self) -> ResiliencePipeline:
        return self._pipeline

    async def _respond(self, key: str) -> list[RawRecord]:
        async def _operation() -> list[RawRecord]:
            if key in self.delays:
                await asyncio.sleep(self.delays[key])
            if key in self.errors:
                raise self.errors[key]
            return [
                RawRecord(source="ticketmaster", kind=RecordKind.EVENT, external_id=p.get("id"), payload=p)
                for p in self.results.get(key, [])
            ]

        return await self._pipeline.call(_operation, "events")

    async def search(self, query: str, page_size: int = 20) -> list[RawRecord]:
        return await self._respond(query)

    async def search_location(self, location: EventLocation, page_size: int = 20) -> list[RawRecord]:
        return await self._respond(f"@{location.city}")

    async def fetch_detail(self, external_id: str) -> RawRecord:
        raise KeyError(external_id)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path) -> SQLiteStoreProvider:
    """A freshly initialized SQLite store in the test's temp directory."""
    provider = SQLiteStoreProvider(db_path=tmp_path / "setlistsync.db")
    await provider.initialize()
    return provider


async def seed_setlist(
    store: SQLiteStoreProvider,
    artist_name: str = "Silk Sonic",
    show_date: datetime.date | str = "2030-05-01",
    entries: int = 3,
    locked: bool = False,
    status: ShowStatus = ShowStatus.UPCOMING,
    followers: int = 0,
    counters: list[tuple[int, int]] | None = None,
) -> dict[str, Any]:
    """Insert an artist (reused by slug), a show, its predicted setlist and entries.

    ``counters`` optionally presets (upvotes, downvotes) per entry.
    """
    slug = slugify(artist_name)
    existing = await store.query(EntityType.ARTIST, {"slug": slug}, limit=1)
    if existing:
        artist = existing[0]
    else:
        artist = await store.insert(
            EntityType.ARTIST, {"name": artist_name, "slug": slug, "followers": followers}
        )

    show = await store.insert(
        EntityType.SHOW,
        {
            "artist_id": artist["id"],
            "venue_id": None,
            "name": f"{artist_name} Live",
            "date": show_date,
            "status": status,
        },
    )
    setlist = await store.insert(
        EntityType.SETLIST,
        {"show_id": show["id"], "type": SetlistType.PREDICTED, "is_locked": locked},
    )
    entry_ids: list[int] = []
    counters = counters or []
    for position in range(1, entries + 1):
        song = await store.insert(
            EntityType.SONG,
            {"title": f"{artist_name} Song {position}", "artist_name": artist_name},
        )
        up, down = counters[position - 1] if position <= len(counters) else (0, 0)
        entry = await store.insert(
            EntityType.SETLIST_ENTRY,
            {
                "setlist_id": setlist["id"],
                "song_id": song["id"],
                "position": position,
                "upvotes": up,
                "downvotes": down,
            },
        )
        entry_ids.append(entry["id"])

    return {
        "artist_id": artist["id"],
        "show_id": show["id"],
        "setlist_id": setlist["id"],
        "entry_ids": entry_ids,
    }


@pytest.fixture
def voter_ids():
    """An endless supply of distinct voter ids."""
    return (f"voter-{n}" for n in itertools.count(1))
