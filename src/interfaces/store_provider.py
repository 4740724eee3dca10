"""Abstract base class for the persistent store.

Defines the read/write contract the sync and vote paths consume.  Every
method is individually atomic; callers never assume a transaction spans
two calls.  Rows are exchanged as plain dicts keyed by column name.
Implementations may use SQLite (local), PostgreSQL, or a hosted backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from src.models.entities import EntityType
from src.utils.errors import StoreError


@dataclass(frozen=True)
class UpsertResult:
    """The row an upsert left behind, and whether it was newly inserted."""

    row: dict[str, Any]
    created: bool


class DuplicateKeyError(StoreError):
    """Raised by :meth:`IStoreProvider.insert` when a unique constraint rejects the row.

    ``columns`` names the constrained columns (e.g. ``("slug",)``) so the
    caller can tell a slug collision apart from an identity race.
    """

    def __init__(self, entity_type: str, columns: tuple[str, ...]) -> None:
        super().__init__(message=f"Duplicate {entity_type} on {', '.join(columns) or 'unknown key'}")
        self.entity_type = entity_type
        self.columns = columns


class IStoreProvider(ABC):
    """Contract for entity persistence.

    Filters passed to :meth:`query` and :meth:`count` map column names to
    values.  A plain key means equality (``None`` matches NULL); suffixes
    select other operators: ``__in`` (iterable), ``__gte``, ``__lte``,
    ``__gt``, ``__lt``, ``__ne``.  ``order_by`` entries are column names,
    prefixed with ``-`` for descending.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables/indices if they don't exist.  Called at startup."""

    @abstractmethod
    async def upsert(
        self,
        entity_type: EntityType,
        key: dict[str, Any],
        fields: dict[str, Any],
        insert_only: dict[str, Any] | None = None,
    ) -> UpsertResult:
        """Insert the row identified by *key* if absent, else update *fields* only.

        Parameters
        ----------
        entity_type:
            Target table.
        key:
            Natural-key columns locating the row (composite keys allowed;
            ``None`` values match NULL).
        fields:
            Mutable columns, written on insert and on update.
        insert_only:
            Immutable columns (slug, external ids) written only when the
            row is created, never rewritten afterwards.
        """

    @abstractmethod
    async def insert(self, entity_type: EntityType, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert a new row and return it.

        Raises
        ------
        DuplicateKeyError
            If a unique constraint rejects the row.
        """

    @abstractmethod
    async def update(
        self, entity_type: EntityType, entity_id: int, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Overwrite *fields* on one row.  Returns the row, or ``None`` if absent."""

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: int) -> dict[str, Any] | None:
        """Return one row by primary key, or ``None``."""

    @abstractmethod
    async def query(
        self,
        entity_type: EntityType,
        filters: dict[str, Any] | None = None,
        order_by: list[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching *filters*."""

    @abstractmethod
    async def count(self, entity_type: EntityType, filters: dict[str, Any] | None = None) -> int:
        """Return how many rows match *filters*."""

    @abstractmethod
    async def delete(self, entity_type: EntityType, entity_id: int) -> bool:
        """Delete one row.  Returns ``False`` if it did not exist."""

    @abstractmethod
    async def adjust_counters(self, entry_id: int, deltas: dict[str, int]) -> dict[str, Any] | None:
        """Apply relative deltas to a SetlistEntry's vote counters in one statement.

        ``deltas`` maps ``"upvotes"`` / ``"downvotes"`` to signed integers.
        All deltas land together, so no reader ever sees one applied
        without the other.  Returns the entry after adjustment, or
        ``None`` if the entry does not exist.
        """

    async def adjust_counter(self, entry_id: int, field: str, delta: int) -> dict[str, Any] | None:
        """Single-counter convenience wrapper around :meth:`adjust_counters`."""
        return await self.adjust_counters(entry_id, {field: delta})

    @abstractmethod
    async def recount_counters(self, entry_ids: list[int] | None = None) -> list[dict[str, Any]]:
        """Recompute SetlistEntry counters from Vote rows, repairing any drift.

        Returns one dict per repaired entry with ``id`` and the previous
        and recomputed ``upvotes`` / ``downvotes``.  ``None`` audits every
        entry.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier for this provider."""
