"""Unit tests for the Reconciler.

Runs against a real temporary SQLite store and a canned catalog source,
covering idempotent re-syncs, slug collisions, performer resolution and
predicted setlist seeding.
"""

from __future__ import annotations

import asyncio

import pytest

from src.models.entities import EntityType
from src.models.records import ArtistRecord, RawRecord, RecordKind, VenueRecord
from src.services.reconciler import ReconcileAction, Reconciler, ReconcileTally
from src.utils.errors import TransientSourceError
from tests.conftest import TODAY, FakeCatalog, spotify_artist, spotify_track, tm_event


def _artist(artist_id: str | None, name: str, followers: int = 1000) -> RawRecord:
    return RawRecord(
        source="spotify",
        kind=RecordKind.ARTIST,
        external_id=artist_id,
        payload=spotify_artist(artist_id, name, followers),
    )


def _event(event_id: str | None, performer: str | None, **kwargs) -> RawRecord:
    return RawRecord(
        source="ticketmaster",
        kind=RecordKind.EVENT,
        external_id=event_id,
        payload=tm_event(event_id, performer, **kwargs),
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def reconciler(store, catalog) -> Reconciler:
    return Reconciler(store, catalog=catalog, today=lambda: TODAY)


# ======================================================================
# Artists
# ======================================================================


class TestArtists:
    @pytest.mark.asyncio
    async def test_same_record_twice_is_idempotent(self, store, reconciler) -> None:
        tally = ReconcileTally()
        await reconciler.reconcile(_artist("sp1", "Silk Sonic", 100), tally)
        row = await reconciler.reconcile(_artist("sp1", "Silk Sonic", 250), tally)

        assert await store.count(EntityType.ARTIST) == 1
        assert row["followers"] == 250
        assert row["slug"] == "silk-sonic"
        counts = tally.snapshot()["artist"]
        assert (counts.created, counts.updated) == (1, 1)

    @pytest.mark.asyncio
    async def test_colliding_names_get_suffixed_slugs(self, store, reconciler) -> None:
        expected = [("sp1", "silk"), ("sp2", "silk-2")]
        for _ in range(2):
            tally = ReconcileTally()
            await reconciler.reconcile(_artist("sp1", "Silk"), tally)
            await reconciler.reconcile(_artist("sp2", "Silk"), tally)

            rows = await store.query(EntityType.ARTIST, order_by=["id"])
            assert [(r["external_id"], r["slug"]) for r in rows] == expected
            assert tally.failed == 0

        assert await store.count(EntityType.ARTIST) == 2
        assert tally.snapshot()["artist"].created == 0

    @pytest.mark.asyncio
    async def test_slug_attempts_are_bounded(self, store, catalog) -> None:
        reconciler = Reconciler(store, catalog=catalog, today=lambda: TODAY, max_slug_attempts=2)
        tally = ReconcileTally()
        for artist_id in ("sp1", "sp2", "sp3"):
            await reconciler.reconcile(_artist(artist_id, "Silk"), tally)

        assert await store.count(EntityType.ARTIST) == 2
        assert tally.failed == 1
        assert "sp3" in tally.errors[0]

    @pytest.mark.asyncio
    async def test_name_only_record_does_not_overwrite(self, reconciler) -> None:
        created, _ = await reconciler.upsert_artist(ArtistRecord.from_catalog(spotify_artist("sp1", "Silk", 500)))
        row, action = await reconciler.upsert_artist(ArtistRecord(name="Silk"))

        assert action is ReconcileAction.SKIPPED
        assert row["id"] == created["id"]
        assert row["followers"] == 500

    @pytest.mark.asyncio
    async def test_catalog_record_claims_basic_artist(self, store, reconciler) -> None:
        basic, _ = await reconciler.upsert_artist(ArtistRecord(name="Adele"))
        row, action = await reconciler.upsert_artist(
            ArtistRecord.from_catalog(spotify_artist("sp9", "Adele", 9000))
        )

        assert action is ReconcileAction.UPDATED
        assert row["id"] == basic["id"]
        assert row["external_id"] == "sp9"
        assert row["slug"] == "adele"
        assert await store.count(EntityType.ARTIST) == 1

    @pytest.mark.asyncio
    async def test_concurrent_reconciles_do_not_duplicate(self, store, reconciler) -> None:
        tally = ReconcileTally()
        await asyncio.gather(*[reconciler.reconcile(_artist("sp1", "Silk"), tally) for _ in range(4)])
        assert await store.count(EntityType.ARTIST) == 1
        assert tally.snapshot()["artist"].created == 1

    @pytest.mark.asyncio
    async def test_unnormalizable_payload_is_counted_as_failed(self, store, reconciler) -> None:
        tally = ReconcileTally()
        raw = RawRecord(source="spotify", kind=RecordKind.ARTIST, external_id="sp1", payload={"id": "sp1"})

        assert await reconciler.reconcile(raw, tally) is None
        assert tally.snapshot()["artist"].failed == 1
        assert await store.count(EntityType.ARTIST) == 0

    @pytest.mark.asyncio
    async def test_top_tracks_become_songs(self, store, catalog, reconciler) -> None:
        catalog.top_tracks["sp1"] = [spotify_track(f"t{n}", f"Song {n}", "Silk Sonic") for n in range(3)]
        tally = ReconcileTally()
        await reconciler.reconcile(_artist("sp1", "Silk Sonic"), tally)
        await reconciler.reconcile(_artist("sp1", "Silk Sonic"), tally)

        assert await store.count(EntityType.SONG) == 3
        songs = tally.snapshot()["song"]
        assert (songs.created, songs.updated) == (3, 3)


# ======================================================================
# Venues
# ======================================================================


class TestVenues:
    @pytest.mark.asyncio
    async def test_unchanged_venue_is_skipped(self, reconciler) -> None:
        record = VenueRecord(external_id="v1", name="The Fillmore", city="San Francisco")
        _, first = await reconciler.upsert_venue(record)
        _, second = await reconciler.upsert_venue(record)
        assert (first, second) == (ReconcileAction.CREATED, ReconcileAction.SKIPPED)

    @pytest.mark.asyncio
    async def test_capacity_is_refreshed(self, reconciler) -> None:
        await reconciler.upsert_venue(VenueRecord(external_id="v1", name="The Fillmore"))
        row, action = await reconciler.upsert_venue(
            VenueRecord(external_id="v1", name="The Fillmore", city="Elsewhere", capacity=1150)
        )
        assert action is ReconcileAction.UPDATED
        assert row["capacity"] == 1150
        assert row["city"] == "Unknown"


# ======================================================================
# Events / shows
# ======================================================================


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_creates_venue_artist_show_and_setlist(self, store, reconciler) -> None:
        tally = ReconcileTally()
        show = await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)

        assert show["external_id"] == "ev1"
        assert show["date"] == "2030-05-01"
        assert show["status"] == "upcoming"
        for entity_type in (EntityType.VENUE, EntityType.ARTIST, EntityType.SHOW, EntityType.SETLIST):
            assert await store.count(entity_type) == 1
        counts = tally.snapshot()
        assert counts["show"].created == 1
        assert counts["artist"].created == 1

    @pytest.mark.asyncio
    async def test_resync_updates_status_without_duplicates(self, store, reconciler) -> None:
        tally = ReconcileTally()
        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)
        show = await reconciler.reconcile(_event("ev1", "Silk Sonic", status="cancelled"), tally)

        assert show["status"] == "cancelled"
        assert await store.count(EntityType.SHOW) == 1
        assert await store.count(EntityType.ARTIST) == 1
        assert await store.count(EntityType.VENUE) == 1
        assert tally.snapshot()["show"].updated == 1

    @pytest.mark.asyncio
    async def test_event_without_id_matches_on_artist_date_venue(self, store, reconciler) -> None:
        tally = ReconcileTally()
        await reconciler.reconcile(_event(None, "Silk Sonic"), tally)
        await reconciler.reconcile(_event(None, "Silk Sonic"), tally)
        assert await store.count(EntityType.SHOW) == 1

    @pytest.mark.asyncio
    async def test_performer_resolved_through_catalog(self, store, catalog, reconciler) -> None:
        catalog.results["The Black Keys"] = [spotify_artist("bk", "The Black Keys", 50_000)]
        await reconciler.reconcile(_event("ev1", "The Black Keys"), ReconcileTally())

        artist = (await store.query(EntityType.ARTIST))[0]
        assert artist["external_id"] == "bk"
        assert artist["followers"] == 50_000

    @pytest.mark.asyncio
    async def test_catalog_failure_falls_back_to_basic_artist(self, store, catalog, reconciler) -> None:
        catalog.errors["Silk Sonic"] = TransientSourceError(message="down")
        tally = ReconcileTally()
        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)

        artist = (await store.query(EntityType.ARTIST))[0]
        assert artist["external_id"] is None
        assert artist["slug"] == "silk-sonic"
        assert tally.failed == 0

    @pytest.mark.asyncio
    async def test_existing_artist_reused_for_performer(self, store, reconciler) -> None:
        tally = ReconcileTally()
        await reconciler.reconcile(_artist("sp1", "Silk Sonic"), tally)
        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)

        assert await store.count(EntityType.ARTIST) == 1
        assert tally.snapshot()["artist"].attempted == 1

    @pytest.mark.asyncio
    async def test_incomplete_event_is_skipped(self, store, reconciler) -> None:
        tally = ReconcileTally()
        assert await reconciler.reconcile(_event("ev1", None), tally) is None
        assert tally.snapshot()["show"].skipped == 1
        assert await store.count(EntityType.SHOW) == 0

    @pytest.mark.asyncio
    async def test_event_without_date_fails(self, reconciler) -> None:
        raw = _event("ev1", "Silk Sonic")
        payload = dict(raw.payload)
        payload["dates"] = {"start": {}}
        tally = ReconcileTally()

        await reconciler.reconcile(raw.model_copy(update={"payload": payload}), tally)
        assert tally.snapshot()["show"].failed == 1

    @pytest.mark.asyncio
    async def test_past_event_gets_no_setlist(self, store, reconciler) -> None:
        show = await reconciler.reconcile(_event("ev1", "Silk Sonic", date="2020-01-01"), ReconcileTally())
        assert show["status"] == "completed"
        assert await store.count(EntityType.SETLIST) == 0


# ======================================================================
# Predicted setlists
# ======================================================================


class TestPredictedSetlists:
    @pytest.mark.asyncio
    async def test_seeded_from_artist_songs(self, store, catalog, reconciler) -> None:
        catalog.top_tracks["sp1"] = [spotify_track(f"t{n}", f"Song {n}", "Silk Sonic") for n in range(7)]
        tally = ReconcileTally()
        await reconciler.reconcile(_artist("sp1", "Silk Sonic"), tally)
        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)

        entries = await store.query(EntityType.SETLIST_ENTRY, order_by=["position"])
        assert [e["position"] for e in entries] == [1, 2, 3, 4, 5]
        assert all(e["upvotes"] == 0 and e["downvotes"] == 0 for e in entries)

    @pytest.mark.asyncio
    async def test_votes_survive_resync(self, store, catalog, reconciler) -> None:
        catalog.top_tracks["sp1"] = [spotify_track(f"t{n}", f"Song {n}", "Silk Sonic") for n in range(3)]
        tally = ReconcileTally()
        await reconciler.reconcile(_artist("sp1", "Silk Sonic"), tally)
        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)
        first = (await store.query(EntityType.SETLIST_ENTRY, {"position": 1}))[0]
        await store.update(EntityType.SETLIST_ENTRY, first["id"], {"upvotes": 4})

        await reconciler.reconcile(_event("ev1", "Silk Sonic"), tally)

        assert await store.count(EntityType.SETLIST) == 1
        assert await store.count(EntityType.SETLIST_ENTRY) == 3
        assert (await store.get(EntityType.SETLIST_ENTRY, first["id"]))["upvotes"] == 4
