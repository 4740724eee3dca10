"""Record reconciliation: external payloads in, idempotent store rows out.

Architecture role: **the write side of every sync cycle**
----------------------------------------------------------
The source clients hand back :class:`RawRecord` payloads exactly as the
providers sent them.  The Reconciler lifts them into normalized records,
decides which stored row (if any) each one *is*, and writes it:

  1. NORMALIZE  -- ``ArtistRecord.from_catalog`` / ``EventRecord.from_event_source``;
                   a payload that cannot be normalized is a per-record failure.
  2. IDENTIFY   -- external id first; otherwise the normalized slug, but only
                   against a row whose external id is unset or equal.
  3. WRITE      -- update mutable fields of a matched row, or insert a new
                   one.  New slugs that collide get ``-2``, ``-3`` ... up to
                   a bound; past it the record fails with ReconciliationError.
  4. FAN OUT    -- events also resolve their venue and performer, and new
                   upcoming shows get a predicted setlist seeded from the
                   artist's songs; catalog artists pull their top tracks.

Writes for the same natural key are serialized through a shared
:class:`KeyedLock`, so two concurrent discovery queries that both return
"Silk" cannot both decide the row is missing.  Slug and id are written
once at insert and never touched again.

Per-record failures never escape :meth:`Reconciler.reconcile`: they are
logged with the record's source and external id and tallied as
``failed`` so the orchestrator can judge the cycle.
"""

from __future__ import annotations

import datetime
from collections.abc import Callable
from enum import Enum
from typing import Any

from src.interfaces.source_client import ICatalogSource
from src.interfaces.store_provider import DuplicateKeyError, IStoreProvider
from src.models.entities import EntityType, SetlistType, ShowStatus
from src.models.records import (
    ArtistRecord,
    EventRecord,
    RawRecord,
    RecordKind,
    TrackRecord,
    VenueRecord,
)
from src.models.sync import EntityCounts
from src.utils.concurrency import KeyedLock
from src.utils.errors import (
    PermanentSourceError,
    RateLimitedError,
    ReconciliationError,
    SetlistSyncError,
    TransientSourceError,
)
from src.utils.logging import get_logger
from src.utils.text_normalizer import name_similarity, slugify, suffixed_slug

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Tuning constants
# ---------------------------------------------------------------------------
_MAX_SLUG_ATTEMPTS = 10          # silk, silk-2 ... silk-10, then give up
_PERFORMER_MATCH_THRESHOLD = 0.85
_PERFORMER_SEARCH_SIZE = 5
_PREDICTED_SETLIST_SIZE = 5
_MAX_TALLY_ERRORS = 50           # error strings kept for the cycle report

_KIND_ENTITY: dict[RecordKind, EntityType] = {
    RecordKind.ARTIST: EntityType.ARTIST,
    RecordKind.EVENT: EntityType.SHOW,
    RecordKind.TRACK: EntityType.SONG,
}


class ReconcileAction(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReconcileTally:
    """Mutable per-entity-type counts accumulated over one sync cycle."""

    def __init__(self) -> None:
        self._counts: dict[str, dict[str, int]] = {}
        self.errors: list[str] = []

    def record(self, entity_type: EntityType, action: ReconcileAction) -> None:
        bucket = self._counts.setdefault(
            entity_type.value, {a.value: 0 for a in ReconcileAction}
        )
        bucket[action.value] += 1

    def record_error(self, message: str) -> None:
        if len(self.errors) < _MAX_TALLY_ERRORS:
            self.errors.append(message)

    @property
    def attempted(self) -> int:
        return sum(sum(bucket.values()) for bucket in self._counts.values())

    @property
    def failed(self) -> int:
        return sum(bucket[ReconcileAction.FAILED.value] for bucket in self._counts.values())

    def snapshot(self) -> dict[str, EntityCounts]:
        return {name: EntityCounts(**bucket) for name, bucket in self._counts.items()}


class Reconciler:
    """Maps external records to stored entities without creating duplicates.

    Parameters
    ----------
    store:
        The persistent store.
    catalog:
        Catalog source used to resolve event performers and to fetch an
        artist's top tracks.  ``None`` (or an unavailable source) skips both.
    locks:
        Shared per-key lock map; the orchestrator passes one per process.
    today:
        Returns the current date; decides when an "upcoming" event is past.
    """

    def __init__(
        self,
        store: IStoreProvider,
        catalog: ICatalogSource | None = None,
        locks: KeyedLock | None = None,
        today: Callable[[], datetime.date] | None = None,
        max_slug_attempts: int = _MAX_SLUG_ATTEMPTS,
        setlist_size: int = _PREDICTED_SETLIST_SIZE,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._locks = locks or KeyedLock()
        self._today = today or (lambda: datetime.datetime.now(tz=datetime.timezone.utc).date())  # noqa: UP017
        self._max_slug_attempts = max_slug_attempts
        self._setlist_size = setlist_size

    # ------------------------------------------------------------------
    # Batch entry point
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        raw: RawRecord,
        tally: ReconcileTally,
        sync_songs: bool = True,
    ) -> dict[str, Any] | None:
        """Reconcile one raw record, tallying the outcome.

        Returns the primary stored row (artist or show), or ``None`` when
        the record was skipped or failed.  Never raises for per-record
        problems.
        """
        try:
            if raw.kind is RecordKind.ARTIST:
                row = await self._reconcile_artist_record(raw, tally)
            elif raw.kind is RecordKind.EVENT:
                row = await self._reconcile_event_record(raw, tally)
            else:
                tally.record(EntityType.SONG, ReconcileAction.SKIPPED)
                return None
        except (SetlistSyncError, ValueError) as exc:
            self.record_failure(raw, tally, exc)
            return None

        if row is not None and raw.kind is RecordKind.ARTIST and sync_songs:
            await self.sync_artist_songs(row, tally)
        return row

    @staticmethod
    def record_failure(raw: RawRecord, tally: ReconcileTally, exc: BaseException) -> None:
        """Tally *raw* as one failed record of its entity type."""
        tally.record(_KIND_ENTITY[raw.kind], ReconcileAction.FAILED)
        tally.record_error(f"{raw.source}:{raw.external_id}: {exc}")
        logger.warning(
            "record_reconcile_failed",
            source=raw.source,
            kind=raw.kind.value,
            external_id=raw.external_id,
            error=str(exc),
        )

    async def _reconcile_artist_record(
        self, raw: RawRecord, tally: ReconcileTally
    ) -> dict[str, Any]:
        record = ArtistRecord.from_catalog(raw.payload)
        row, action = await self.upsert_artist(record)
        tally.record(EntityType.ARTIST, action)
        return row

    async def _reconcile_event_record(
        self, raw: RawRecord, tally: ReconcileTally
    ) -> dict[str, Any] | None:
        event = EventRecord.from_event_source(raw.payload, today=self._today())
        if not event.performer_name or event.venue is None:
            tally.record(EntityType.SHOW, ReconcileAction.SKIPPED)
            logger.debug(
                "event_skipped_incomplete",
                source=raw.source,
                external_id=raw.external_id,
                has_performer=bool(event.performer_name),
                has_venue=event.venue is not None,
            )
            return None

        venue_row, venue_action = await self.upsert_venue(event.venue)
        tally.record(EntityType.VENUE, venue_action)

        artist_row, artist_action = await self.resolve_performer(event.performer_name)
        if artist_action is not None:
            tally.record(EntityType.ARTIST, artist_action)

        show_row, show_action = await self.upsert_show(event, artist_row["id"], venue_row["id"])
        tally.record(EntityType.SHOW, show_action)

        if show_row["status"] == ShowStatus.UPCOMING.value:
            await self.ensure_predicted_setlist(show_row, artist_row, tally)
        return show_row

    # ------------------------------------------------------------------
    # Artists
    # ------------------------------------------------------------------

    async def upsert_artist(self, record: ArtistRecord) -> tuple[dict[str, Any], ReconcileAction]:
        """Insert or refresh one artist.  Slug is assigned on first insert only."""
        base = self._base_slug(record.name, EntityType.ARTIST)
        mutable: dict[str, Any] = {
            "name": record.name,
            "followers": record.followers,
            "verified": record.verified,
        }
        # A name-only record (no catalog data) must not wipe what the
        # catalog already filled in.
        if record.external_id:
            mutable.update(image_url=record.image_url, genres=record.genres)

        async with self._locks.hold((EntityType.ARTIST, base)):
            existing = await self._resolve_identity(EntityType.ARTIST, record.external_id, base)
            if existing is not None:
                if not record.external_id:
                    return existing, ReconcileAction.SKIPPED
                fields = dict(mutable)
                if existing["external_id"] is None:
                    fields["external_id"] = record.external_id
                row = await self._store.update(EntityType.ARTIST, existing["id"], fields)
                return row or existing, ReconcileAction.UPDATED

            row = await self._insert_with_slug(
                EntityType.ARTIST,
                base,
                {
                    **mutable,
                    "external_id": record.external_id,
                    "image_url": record.image_url,
                    "genres": record.genres,
                },
            )
        logger.info(
            "artist_created",
            artist_id=row["id"],
            slug=row["slug"],
            external_id=record.external_id,
        )
        return row, ReconcileAction.CREATED

    async def resolve_performer(
        self, performer_name: str
    ) -> tuple[dict[str, Any], ReconcileAction | None]:
        """Find or create the artist an event names as its performer.

        Order: an existing artist with the same slug; the best catalog
        search result scoring at least 0.85 similarity; a basic artist
        with no catalog data.  The action is ``None`` when an existing
        row was used as-is.
        """
        base = self._base_slug(performer_name, EntityType.ARTIST)
        rows = await self._store.query(EntityType.ARTIST, {"slug": base}, limit=1)
        if rows:
            return rows[0], None

        match = await self._search_catalog_for(performer_name)
        if match is not None:
            return await self.upsert_artist(match)

        return await self.upsert_artist(ArtistRecord(name=performer_name.strip()))

    async def _search_catalog_for(self, performer_name: str) -> ArtistRecord | None:
        if self._catalog is None or not self._catalog.is_available():
            return None
        try:
            results = await self._catalog.search(performer_name, _PERFORMER_SEARCH_SIZE)
        except (TransientSourceError, PermanentSourceError, RateLimitedError) as exc:
            logger.warning(
                "performer_catalog_lookup_failed",
                performer=performer_name,
                error=str(exc),
            )
            return None

        best: tuple[float, RawRecord] | None = None
        for raw in results:
            score = name_similarity(performer_name, str(raw.payload.get("name") or ""))
            if best is None or score > best[0]:
                best = (score, raw)
        if best is None or best[0] < _PERFORMER_MATCH_THRESHOLD:
            logger.debug("performer_no_catalog_match", performer=performer_name)
            return None
        return ArtistRecord.from_catalog(best[1].payload)

    # ------------------------------------------------------------------
    # Venues
    # ------------------------------------------------------------------

    async def upsert_venue(self, record: VenueRecord) -> tuple[dict[str, Any], ReconcileAction]:
        """Insert a venue, or refresh only its capacity if it already exists."""
        base = self._base_slug(record.name, EntityType.VENUE)
        async with self._locks.hold((EntityType.VENUE, base)):
            existing = await self._resolve_identity(EntityType.VENUE, record.external_id, base)
            if existing is not None:
                fields: dict[str, Any] = {}
                if record.capacity is not None:
                    fields["capacity"] = record.capacity
                if existing["external_id"] is None and record.external_id:
                    fields["external_id"] = record.external_id
                if not fields:
                    return existing, ReconcileAction.SKIPPED
                row = await self._store.update(EntityType.VENUE, existing["id"], fields)
                return row or existing, ReconcileAction.UPDATED

            row = await self._insert_with_slug(
                EntityType.VENUE,
                base,
                {
                    "external_id": record.external_id,
                    "name": record.name,
                    "city": record.city,
                    "state": record.state,
                    "country": record.country,
                    "capacity": record.capacity,
                },
            )
        return row, ReconcileAction.CREATED

    # ------------------------------------------------------------------
    # Shows
    # ------------------------------------------------------------------

    async def upsert_show(
        self,
        event: EventRecord,
        artist_id: int,
        venue_id: int | None,
    ) -> tuple[dict[str, Any], ReconcileAction]:
        """Upsert a show on external id, else on (artist, date, venue).

        Only status, ticket link and start time change on update.
        """
        mutable = {
            "status": event.status,
            "ticket_url": event.ticket_url,
            "start_time": event.start_time,
        }
        composite = {"artist_id": artist_id, "date": event.date, "venue_id": venue_id}

        async with self._locks.hold((EntityType.SHOW, artist_id, event.date, venue_id)):
            if event.external_id:
                rows = await self._store.query(
                    EntityType.SHOW, {"external_id": event.external_id}, limit=1
                )
                if rows:
                    row = await self._store.update(EntityType.SHOW, rows[0]["id"], mutable)
                    return row or rows[0], ReconcileAction.UPDATED

            result = await self._store.upsert(
                EntityType.SHOW,
                key=composite,
                fields=mutable,
                insert_only={"name": event.name, "external_id": event.external_id},
            )
            row = result.row
            if not result.created and row["external_id"] is None and event.external_id:
                row = await self._store.update(
                    EntityType.SHOW, row["id"], {"external_id": event.external_id}
                ) or row

        if result.created:
            logger.info(
                "show_created",
                show_id=row["id"],
                artist_id=artist_id,
                date=event.date.isoformat(),
                status=row["status"],
            )
            return row, ReconcileAction.CREATED
        return row, ReconcileAction.UPDATED

    # ------------------------------------------------------------------
    # Setlists and songs
    # ------------------------------------------------------------------

    async def ensure_predicted_setlist(
        self,
        show_row: dict[str, Any],
        artist_row: dict[str, Any],
        tally: ReconcileTally,
    ) -> dict[str, Any]:
        """Make sure the show has a predicted setlist, seeding entries if it has none.

        Entries start with zero votes.  Existing entries are never
        rewritten, so votes already cast survive later cycles.
        """
        result = await self._store.upsert(
            EntityType.SETLIST,
            key={"show_id": show_row["id"], "type": SetlistType.PREDICTED},
            fields={},
            insert_only={"is_locked": False},
        )
        setlist = result.row
        tally.record(
            EntityType.SETLIST,
            ReconcileAction.CREATED if result.created else ReconcileAction.SKIPPED,
        )

        if await self._store.count(EntityType.SETLIST_ENTRY, {"setlist_id": setlist["id"]}):
            return setlist

        songs = await self._store.query(
            EntityType.SONG,
            {"artist_name": artist_row["name"]},
            order_by=["id"],
            limit=self._setlist_size,
        )
        for position, song in enumerate(songs, start=1):
            entry = await self._store.upsert(
                EntityType.SETLIST_ENTRY,
                key={"setlist_id": setlist["id"], "position": position},
                fields={},
                insert_only={"song_id": song["id"], "upvotes": 0, "downvotes": 0},
            )
            tally.record(
                EntityType.SETLIST_ENTRY,
                ReconcileAction.CREATED if entry.created else ReconcileAction.SKIPPED,
            )
        if songs:
            logger.debug("predicted_setlist_seeded", setlist_id=setlist["id"], entries=len(songs))
        return setlist

    async def sync_artist_songs(self, artist_row: dict[str, Any], tally: ReconcileTally) -> int:
        """Upsert the artist's top tracks as songs.  Returns how many were written."""
        external_id = artist_row.get("external_id")
        if not external_id or self._catalog is None or not self._catalog.is_available():
            return 0
        try:
            tracks = await self._catalog.fetch_top_tracks(external_id)
        except SetlistSyncError as exc:
            tally.record(EntityType.SONG, ReconcileAction.FAILED)
            tally.record_error(f"top-tracks {external_id}: {exc}")
            logger.warning("top_tracks_fetch_failed", artist_id=artist_row["id"], error=str(exc))
            return 0

        written = 0
        for raw in tracks:
            try:
                track = TrackRecord.from_catalog(raw.payload, fallback_artist=artist_row["name"])
                if track.external_id:
                    key = {"external_id": track.external_id}
                else:
                    key = {"title": track.title, "artist_name": track.artist_name}
                result = await self._store.upsert(
                    EntityType.SONG,
                    key=key,
                    fields={"title": track.title, "artist_name": track.artist_name},
                )
            except (SetlistSyncError, ValueError) as exc:
                tally.record(EntityType.SONG, ReconcileAction.FAILED)
                logger.warning(
                    "song_reconcile_failed",
                    source=raw.source,
                    external_id=raw.external_id,
                    error=str(exc),
                )
                continue
            tally.record(
                EntityType.SONG,
                ReconcileAction.CREATED if result.created else ReconcileAction.UPDATED,
            )
            written += 1
        return written

    # ------------------------------------------------------------------
    # Identity helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _base_slug(name: str, entity_type: EntityType) -> str:
        base = slugify(name)
        if not base:
            raise ReconciliationError(
                message=f"{entity_type.value} name {name!r} yields an empty slug"
            )
        return base

    async def _resolve_identity(
        self,
        entity_type: EntityType,
        external_id: str | None,
        base_slug: str,
    ) -> dict[str, Any] | None:
        if external_id:
            rows = await self._store.query(entity_type, {"external_id": external_id}, limit=1)
            if rows:
                return rows[0]
        rows = await self._store.query(entity_type, {"slug": base_slug}, limit=1)
        if not rows:
            return None
        candidate = rows[0]
        # A slug match owned by a different external id is a different entity.
        if external_id and candidate["external_id"] not in (None, external_id):
            return None
        return candidate

    async def _insert_with_slug(
        self,
        entity_type: EntityType,
        base_slug: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        for attempt in range(1, self._max_slug_attempts + 1):
            slug = suffixed_slug(base_slug, attempt)
            try:
                return await self._store.insert(entity_type, {**fields, "slug": slug})
            except DuplicateKeyError as exc:
                if "slug" not in exc.columns:
                    raise ReconciliationError(
                        message=f"{entity_type.value} {base_slug!r} collided on {exc.columns}"
                    ) from exc
                logger.debug("slug_collision", entity_type=entity_type.value, slug=slug)
        raise ReconciliationError(
            message=(
                f"No free slug for {entity_type.value} {base_slug!r} "
                f"after {self._max_slug_attempts} attempts"
            )
        )
