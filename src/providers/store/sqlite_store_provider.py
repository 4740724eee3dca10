"""SQLite-backed store provider.

# ─── ARCHITECTURE ROLE ───────────────────────────────────────────────
#
# Layer: Providers (concrete adapter implementing IStoreProvider).
# Pattern: Adapter pattern -- wraps SQLite behind the IStoreProvider ABC
#          so the reconciler and vote aggregator never see SQL.
#
# Database: ``data/setlistsync.db`` -- artists, venues, shows, songs,
# setlists, setlist entries and votes.
#
# Atomicity:
#   - Each public method opens its own connection and, where it issues
#     more than one statement, wraps them in ``BEGIN IMMEDIATE`` so the
#     read-then-write of an upsert cannot interleave with another writer.
#   - Counter adjustments are a single ``UPDATE ... SET upvotes = upvotes
#     + ?`` statement; the counters are never read-modify-written in
#     Python.
#
# Uses ``aiosqlite`` for async I/O and ``PRAGMA journal_mode=WAL`` for
# concurrent read safety.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import datetime
import json
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from src.interfaces.store_provider import DuplicateKeyError, IStoreProvider, UpsertResult
from src.models.entities import EntityType
from src.utils.errors import StoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/setlistsync.db")

# Seconds a connection waits on a locked database before failing.
_BUSY_TIMEOUT = 30.0

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

# ── Schema DDL ────────────────────────────────────────────────────────

_CREATE_TABLES = [
    """\
CREATE TABLE IF NOT EXISTS artists (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id  TEXT    UNIQUE,
    name         TEXT    NOT NULL,
    slug         TEXT    NOT NULL UNIQUE,
    image_url    TEXT,
    followers    INTEGER NOT NULL DEFAULT 0,
    verified     INTEGER NOT NULL DEFAULT 0,
    genres       TEXT    NOT NULL DEFAULT '[]',
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
""",
    """\
CREATE TABLE IF NOT EXISTS venues (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id  TEXT    UNIQUE,
    name         TEXT    NOT NULL,
    slug         TEXT    NOT NULL UNIQUE,
    city         TEXT    NOT NULL DEFAULT 'Unknown',
    state        TEXT,
    country      TEXT    NOT NULL DEFAULT 'Unknown',
    capacity     INTEGER,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
""",
    """\
CREATE TABLE IF NOT EXISTS shows (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id  TEXT    UNIQUE,
    artist_id    INTEGER NOT NULL REFERENCES artists(id) ON DELETE CASCADE,
    venue_id     INTEGER REFERENCES venues(id) ON DELETE SET NULL,
    name         TEXT    NOT NULL,
    date         TEXT    NOT NULL,
    start_time   TEXT,
    status       TEXT    NOT NULL DEFAULT 'upcoming',
    ticket_url   TEXT,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(artist_id, date, venue_id)
);
""",
    """\
CREATE TABLE IF NOT EXISTS songs (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id  TEXT    UNIQUE,
    title        TEXT    NOT NULL,
    artist_name  TEXT    NOT NULL,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
""",
    """\
CREATE TABLE IF NOT EXISTS setlists (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    show_id      INTEGER NOT NULL REFERENCES shows(id) ON DELETE CASCADE,
    type         TEXT    NOT NULL DEFAULT 'predicted',
    is_locked    INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(show_id, type)
);
""",
    """\
CREATE TABLE IF NOT EXISTS setlist_entries (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    setlist_id   INTEGER NOT NULL REFERENCES setlists(id) ON DELETE CASCADE,
    song_id      INTEGER NOT NULL REFERENCES songs(id),
    position     INTEGER NOT NULL CHECK (position >= 1),
    upvotes      INTEGER NOT NULL DEFAULT 0,
    downvotes    INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(setlist_id, position)
);
""",
    """\
CREATE TABLE IF NOT EXISTS votes (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    voter_id     TEXT    NOT NULL,
    entry_id     INTEGER NOT NULL REFERENCES setlist_entries(id) ON DELETE CASCADE,
    direction    TEXT    NOT NULL CHECK (direction IN ('up', 'down')),
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(voter_id, entry_id)
);
""",
]

_CREATE_INDICES = [
    "CREATE INDEX IF NOT EXISTS idx_shows_artist ON shows(artist_id);",
    "CREATE INDEX IF NOT EXISTS idx_shows_date_status ON shows(date, status);",
    "CREATE INDEX IF NOT EXISTS idx_setlists_show ON setlists(show_id);",
    "CREATE INDEX IF NOT EXISTS idx_entries_setlist ON setlist_entries(setlist_id);",
    "CREATE INDEX IF NOT EXISTS idx_votes_entry ON votes(entry_id);",
]

# ── Table / column whitelist ──────────────────────────────────────────
# Every identifier interpolated into SQL must come from these maps.

_TABLES: dict[EntityType, str] = {
    EntityType.ARTIST: "artists",
    EntityType.VENUE: "venues",
    EntityType.SHOW: "shows",
    EntityType.SONG: "songs",
    EntityType.SETLIST: "setlists",
    EntityType.SETLIST_ENTRY: "setlist_entries",
    EntityType.VOTE: "votes",
}

_TIMESTAMPS = frozenset({"id", "created_at", "updated_at"})

_COLUMNS: dict[str, frozenset[str]] = {
    "artists": _TIMESTAMPS
    | {"external_id", "name", "slug", "image_url", "followers", "verified", "genres"},
    "venues": _TIMESTAMPS
    | {"external_id", "name", "slug", "city", "state", "country", "capacity"},
    "shows": _TIMESTAMPS
    | {"external_id", "artist_id", "venue_id", "name", "date", "start_time", "status", "ticket_url"},
    "songs": _TIMESTAMPS | {"external_id", "title", "artist_name"},
    "setlists": _TIMESTAMPS | {"show_id", "type", "is_locked"},
    "setlist_entries": _TIMESTAMPS
    | {"setlist_id", "song_id", "position", "upvotes", "downvotes"},
    "votes": _TIMESTAMPS | {"voter_id", "entry_id", "direction"},
}

_JSON_COLUMNS = frozenset({"genres"})
_BOOL_COLUMNS = frozenset({"verified", "is_locked"})
_COUNTER_COLUMNS = frozenset({"upvotes", "downvotes"})

_OPERATORS: dict[str, str] = {
    "": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}

_UNIQUE_FAILED_RE = re.compile(r"UNIQUE constraint failed: (.+)$")

# ── Counter audit ─────────────────────────────────────────────────────

_DRIFT_SQL = """\
SELECT id, upvotes, downvotes, actual_up, actual_down FROM (
    SELECT e.id, e.upvotes, e.downvotes,
           (SELECT COUNT(*) FROM votes v WHERE v.entry_id = e.id AND v.direction = 'up')   AS actual_up,
           (SELECT COUNT(*) FROM votes v WHERE v.entry_id = e.id AND v.direction = 'down') AS actual_down
    FROM setlist_entries e
    {where}
)
WHERE upvotes != actual_up OR downvotes != actual_down
ORDER BY id;
"""

_RECOUNT_SQL = f"""\
UPDATE setlist_entries
SET upvotes    = (SELECT COUNT(*) FROM votes v WHERE v.entry_id = setlist_entries.id AND v.direction = 'up'),
    downvotes  = (SELECT COUNT(*) FROM votes v WHERE v.entry_id = setlist_entries.id AND v.direction = 'down'),
    updated_at = {_NOW}
WHERE id = ?;
"""


def _encode(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(list(value) if isinstance(value, tuple) else value)
    return value


def _decode(row: aiosqlite.Row) -> dict[str, Any]:
    result = dict(row)
    for column in result.keys() & _JSON_COLUMNS:
        result[column] = json.loads(result[column]) if result[column] else []
    for column in result.keys() & _BOOL_COLUMNS:
        result[column] = bool(result[column])
    return result


class SQLiteStoreProvider(IStoreProvider):
    """SQLite-backed entity persistence for artists, shows, setlists and votes."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create all tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for ddl in _CREATE_TABLES:
                await db.execute(ddl)
            for idx_sql in _CREATE_INDICES:
                await db.execute(idx_sql)
        logger.info("store_db_initialized", path=str(self._db_path))

    def get_provider_name(self) -> str:
        return "sqlite_store"

    # ── Writes ─────────────────────────────────────────────────────────

    async def upsert(
        self,
        entity_type: EntityType,
        key: dict[str, Any],
        fields: dict[str, Any],
        insert_only: dict[str, Any] | None = None,
    ) -> UpsertResult:
        if not key:
            raise StoreError(message="upsert requires at least one key column")
        table = self._table(entity_type)
        insert_only = insert_only or {}
        self._check_columns(table, [*key, *fields, *insert_only])

        key_sql = " AND ".join(f"{column} IS ?" for column in key)
        async with self._transaction() as db:
            cursor = await db.execute(
                f"SELECT id FROM {table} WHERE {key_sql} LIMIT 1",
                [_encode(v) for v in key.values()],
            )
            existing = await cursor.fetchone()
            if existing is None:
                row_id = await self._insert_row(db, entity_type, table, {**key, **insert_only, **fields})
                created = True
            else:
                row_id = existing["id"]
                if fields:
                    await self._update_row(db, table, row_id, fields)
                created = False
            row = await self._fetch_by_id(db, table, row_id)

        logger.debug(
            "store_upsert",
            entity_type=entity_type.value,
            entity_id=row_id,
            created=created,
        )
        return UpsertResult(row=row, created=created)

    async def insert(self, entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
        table = self._table(entity_type)
        self._check_columns(table, fields)
        async with self._transaction() as db:
            row_id = await self._insert_row(db, entity_type, table, fields)
            return await self._fetch_by_id(db, table, row_id)

    async def update(
        self, entity_type: EntityType, entity_id: int, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        table = self._table(entity_type)
        self._check_columns(table, fields)
        async with self._transaction() as db:
            if fields and not await self._update_row(db, table, entity_id, fields):
                return None
            cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
            row = await cursor.fetchone()
        return _decode(row) if row is not None else None

    async def delete(self, entity_type: EntityType, entity_id: int) -> bool:
        table = self._table(entity_type)
        async with self._connect() as db:
            cursor = await db.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
            deleted = cursor.rowcount > 0
        return deleted

    async def adjust_counters(self, entry_id: int, deltas: dict[str, int]) -> dict[str, Any] | None:
        unknown = set(deltas) - _COUNTER_COLUMNS
        if unknown:
            raise StoreError(message=f"Not a counter column: {', '.join(sorted(unknown))}")
        if not deltas:
            return await self.get(EntityType.SETLIST_ENTRY, entry_id)

        assignments = ", ".join(f"{column} = {column} + ?" for column in deltas)
        async with self._transaction() as db:
            cursor = await db.execute(
                f"UPDATE setlist_entries SET {assignments}, updated_at = {_NOW} WHERE id = ?",
                [*deltas.values(), entry_id],
            )
            if cursor.rowcount == 0:
                return None
            row = await self._fetch_by_id(db, "setlist_entries", entry_id)

        logger.debug("counters_adjusted", entry_id=entry_id, **deltas)
        return row

    async def recount_counters(self, entry_ids: list[int] | None = None) -> list[dict[str, Any]]:
        params: list[Any] = []
        where = ""
        if entry_ids is not None:
            if not entry_ids:
                return []
            where = f"WHERE e.id IN ({', '.join('?' for _ in entry_ids)})"
            params = list(entry_ids)

        repaired: list[dict[str, Any]] = []
        async with self._transaction() as db:
            cursor = await db.execute(_DRIFT_SQL.format(where=where), params)
            drifted = [dict(r) for r in await cursor.fetchall()]
            for row in drifted:
                await db.execute(_RECOUNT_SQL, (row["id"],))
                repaired.append({
                    "id": row["id"],
                    "previous_upvotes": row["upvotes"],
                    "previous_downvotes": row["downvotes"],
                    "upvotes": row["actual_up"],
                    "downvotes": row["actual_down"],
                })

        if repaired:
            logger.warning("counter_drift_repaired", entries=len(repaired))
        return repaired

    # ── Reads ──────────────────────────────────────────────────────────

    async def get(self, entity_type: EntityType, entity_id: int) -> dict[str, Any] | None:
        table = self._table(entity_type)
        async with self._connect() as db:
            cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
            row = await cursor.fetchone()
        return _decode(row) if row is not None else None

    async def query(
        self,
        entity_type: EntityType,
        filters: dict[str, Any] | None = None,
        order_by: list[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = self._table(entity_type)
        where, params = self._where(table, filters)
        sql = f"SELECT * FROM {table}{where}{self._order(table, order_by)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_decode(r) for r in rows]

    async def count(self, entity_type: EntityType, filters: dict[str, Any] | None = None) -> int:
        table = self._table(entity_type)
        where, params = self._where(table, filters)
        async with self._connect() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM {table}{where}", params)
            row = await cursor.fetchone()
        return int(row[0])

    # ── Internal helpers ───────────────────────────────────────────────

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # isolation_level=None: autocommit; multi-statement work opts in
        # to an explicit transaction via _transaction().
        async with aiosqlite.connect(
            str(self._db_path), timeout=_BUSY_TIMEOUT, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON;")
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE;")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK;")
                raise
            await db.execute("COMMIT;")

    @staticmethod
    def _table(entity_type: EntityType) -> str:
        try:
            return _TABLES[EntityType(entity_type)]
        except (KeyError, ValueError) as exc:
            raise StoreError(message=f"Unknown entity type: {entity_type!r}") from exc

    @staticmethod
    def _check_columns(table: str, columns: Any) -> None:
        unknown = set(columns) - _COLUMNS[table]
        if unknown:
            raise StoreError(message=f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")

    def _where(self, table: str, filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for raw_key, value in (filters or {}).items():
            column, _, op = raw_key.partition("__")
            self._check_columns(table, [column])
            if op == "in":
                values = [_encode(v) for v in value]
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif op not in _OPERATORS:
                raise StoreError(message=f"Unknown filter operator: {op!r}")
            elif value is None and op in ("", "ne"):
                clauses.append(f"{column} IS {'NOT ' if op == 'ne' else ''}NULL")
            else:
                clauses.append(f"{column} {_OPERATORS[op]} ?")
                params.append(_encode(value))
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _order(self, table: str, order_by: list[str] | None) -> str:
        terms: list[str] = []
        for term in order_by or []:
            column = term.lstrip("-")
            self._check_columns(table, [column])
            terms.append(f"{column} {'DESC' if term.startswith('-') else 'ASC'}")
        # Stable output across calls for equal sort keys.
        terms.append("id ASC")
        return " ORDER BY " + ", ".join(terms)

    async def _insert_row(
        self,
        db: aiosqlite.Connection,
        entity_type: EntityType,
        table: str,
        values: dict[str, Any],
    ) -> int:
        columns = list(values)
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        try:
            cursor = await db.execute(sql, [_encode(v) for v in values.values()])
        except sqlite3.IntegrityError as exc:
            match = _UNIQUE_FAILED_RE.search(str(exc))
            if match is None:
                raise StoreError(message=f"Integrity violation on {table}: {exc}") from exc
            constrained = tuple(part.strip().split(".")[-1] for part in match.group(1).split(","))
            raise DuplicateKeyError(entity_type.value, constrained) from exc
        return int(cursor.lastrowid)

    @staticmethod
    async def _update_row(
        db: aiosqlite.Connection, table: str, row_id: int, fields: dict[str, Any]
    ) -> bool:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = await db.execute(
            f"UPDATE {table} SET {assignments}, updated_at = {_NOW} WHERE id = ?",
            [*(_encode(v) for v in fields.values()), row_id],
        )
        return cursor.rowcount > 0

    @staticmethod
    async def _fetch_by_id(db: aiosqlite.Connection, table: str, row_id: int) -> dict[str, Any]:
        cursor = await db.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
        row = await cursor.fetchone()
        if row is None:
            raise StoreError(message=f"Row {row_id} vanished from {table}")
        return _decode(row)
