"""Unit tests for SQLiteStoreProvider.

Exercises upsert semantics, unique-key reporting, filters and ordering,
and the atomic counter operations against a temporary SQLite database.
"""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from src.interfaces.store_provider import DuplicateKeyError
from src.models.entities import EntityType, SetlistType, ShowStatus
from src.utils.errors import StoreError
from tests.conftest import seed_setlist

# ─── Initialization ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_provider_name(store):
    assert store.get_provider_name() == "sqlite_store"


@pytest.mark.asyncio
async def test_double_initialize_is_idempotent(store):
    await store.initialize()
    assert await store.count(EntityType.ARTIST) == 0


# ─── Insert / get / update / delete ───────────────────────────────


@pytest.mark.asyncio
async def test_insert_and_get_round_trip_types(store):
    row = await store.insert(
        EntityType.ARTIST,
        {"name": "Silk Sonic", "slug": "silk-sonic", "verified": True, "genres": ["funk", "soul"]},
    )
    fetched = await store.get(EntityType.ARTIST, row["id"])
    assert fetched["verified"] is True
    assert fetched["genres"] == ["funk", "soul"]
    assert fetched["followers"] == 0
    assert fetched["created_at"]


@pytest.mark.asyncio
async def test_duplicate_slug_reports_column(store):
    await store.insert(EntityType.ARTIST, {"name": "Silk", "slug": "silk"})
    with pytest.raises(DuplicateKeyError) as info:
        await store.insert(EntityType.ARTIST, {"name": "Silk", "slug": "silk"})
    assert info.value.columns == ("slug",)


@pytest.mark.asyncio
async def test_composite_unique_reports_all_columns(store):
    seeded = await seed_setlist(store, entries=0)
    with pytest.raises(DuplicateKeyError) as info:
        await store.insert(
            EntityType.SETLIST, {"show_id": seeded["show_id"], "type": SetlistType.PREDICTED}
        )
    assert info.value.columns == ("show_id", "type")


@pytest.mark.asyncio
async def test_update_missing_row_returns_none(store):
    assert await store.update(EntityType.ARTIST, 999, {"followers": 1}) is None


@pytest.mark.asyncio
async def test_delete(store):
    row = await store.insert(EntityType.ARTIST, {"name": "Silk", "slug": "silk"})
    assert await store.delete(EntityType.ARTIST, row["id"]) is True
    assert await store.delete(EntityType.ARTIST, row["id"]) is False


@pytest.mark.asyncio
async def test_unknown_column_rejected(store):
    with pytest.raises(StoreError):
        await store.insert(EntityType.ARTIST, {"name": "Silk", "slug": "silk", "bogus": 1})


# ─── Upsert ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_upsert_inserts_then_updates_only_mutable_fields(store):
    first = await store.upsert(
        EntityType.ARTIST,
        key={"external_id": "sp1"},
        fields={"name": "Silk", "followers": 10},
        insert_only={"slug": "silk"},
    )
    second = await store.upsert(
        EntityType.ARTIST,
        key={"external_id": "sp1"},
        fields={"name": "Silk", "followers": 20},
        insert_only={"slug": "should-not-change"},
    )
    assert first.created is True
    assert second.created is False
    assert second.row["id"] == first.row["id"]
    assert second.row["slug"] == "silk"
    assert second.row["followers"] == 20


@pytest.mark.asyncio
async def test_upsert_composite_key_matches_null(store):
    artist = await store.insert(EntityType.ARTIST, {"name": "Silk", "slug": "silk"})
    key = {"artist_id": artist["id"], "date": date(2030, 5, 1), "venue_id": None}
    first = await store.upsert(
        EntityType.SHOW, key=key, fields={"status": ShowStatus.UPCOMING}, insert_only={"name": "A"}
    )
    second = await store.upsert(
        EntityType.SHOW, key=key, fields={"status": ShowStatus.CANCELLED}, insert_only={"name": "B"}
    )
    assert second.created is False
    assert second.row["id"] == first.row["id"]
    assert second.row["status"] == "cancelled"
    assert second.row["name"] == "A"
    assert await store.count(EntityType.SHOW) == 1


@pytest.mark.asyncio
async def test_concurrent_upserts_create_one_row(store):
    results = await asyncio.gather(*[
        store.upsert(
            EntityType.SONG,
            key={"external_id": "t1"},
            fields={"title": "Intro", "artist_name": "Silk"},
        )
        for _ in range(5)
    ])
    assert sum(r.created for r in results) == 1
    assert await store.count(EntityType.SONG) == 1


# ─── Query ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_query_operators_and_order(store):
    for name, followers in [("A", 10), ("B", 30), ("C", 20)]:
        await store.insert(
            EntityType.ARTIST, {"name": name, "slug": name.lower(), "followers": followers}
        )

    rows = await store.query(EntityType.ARTIST, {"followers__gte": 20}, order_by=["-followers"])
    assert [r["name"] for r in rows] == ["B", "C"]

    rows = await store.query(EntityType.ARTIST, {"slug__in": ["a", "c"]}, order_by=["name"])
    assert [r["name"] for r in rows] == ["A", "C"]

    assert await store.query(EntityType.ARTIST, {"slug__in": []}) == []
    assert await store.count(EntityType.ARTIST, {"followers__lt": 20}) == 1
    assert len(await store.query(EntityType.ARTIST, limit=2)) == 2


@pytest.mark.asyncio
async def test_query_none_matches_null(store):
    await store.insert(EntityType.ARTIST, {"name": "A", "slug": "a"})
    await store.insert(EntityType.ARTIST, {"name": "B", "slug": "b", "external_id": "sp-b"})
    assert [r["name"] for r in await store.query(EntityType.ARTIST, {"external_id": None})] == ["A"]
    assert [r["name"] for r in await store.query(EntityType.ARTIST, {"external_id__ne": None})] == ["B"]


@pytest.mark.asyncio
async def test_unknown_operator_rejected(store):
    with pytest.raises(StoreError):
        await store.query(EntityType.ARTIST, {"followers__like": 1})


# ─── Counters ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_adjust_counters_applies_both_deltas(store):
    seeded = await seed_setlist(store, entries=1, counters=[(3, 1)])
    entry_id = seeded["entry_ids"][0]

    row = await store.adjust_counters(entry_id, {"upvotes": -1, "downvotes": 1})
    assert (row["upvotes"], row["downvotes"]) == (2, 2)

    row = await store.adjust_counter(entry_id, "upvotes", 1)
    assert row["upvotes"] == 3


@pytest.mark.asyncio
async def test_adjust_counters_missing_entry(store):
    assert await store.adjust_counters(999, {"upvotes": 1}) is None


@pytest.mark.asyncio
async def test_adjust_counters_rejects_other_columns(store):
    with pytest.raises(StoreError):
        await store.adjust_counters(1, {"position": 1})


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(store):
    seeded = await seed_setlist(store, entries=1)
    entry_id = seeded["entry_ids"][0]
    await asyncio.gather(*[store.adjust_counter(entry_id, "upvotes", 1) for _ in range(20)])
    assert (await store.get(EntityType.SETLIST_ENTRY, entry_id))["upvotes"] == 20


@pytest.mark.asyncio
async def test_recount_repairs_drift_only(store):
    seeded = await seed_setlist(store, entries=2)
    first, second = seeded["entry_ids"]
    await store.insert(EntityType.VOTE, {"voter_id": "u1", "entry_id": first, "direction": "up"})
    await store.insert(EntityType.VOTE, {"voter_id": "u2", "entry_id": first, "direction": "down"})
    await store.update(EntityType.SETLIST_ENTRY, first, {"upvotes": 5})

    repaired = await store.recount_counters()

    assert repaired == [{
        "id": first,
        "previous_upvotes": 5,
        "previous_downvotes": 0,
        "upvotes": 1,
        "downvotes": 1,
    }]
    row = await store.get(EntityType.SETLIST_ENTRY, first)
    assert (row["upvotes"], row["downvotes"]) == (1, 1)
    assert await store.recount_counters([second]) == []
    assert await store.recount_counters([]) == []
