"""Abstract base classes for external data sources.

Two sources feed the sync engine: a music catalog (artists, top tracks)
and an event/ticketing source (shows at venues).  Both return
:class:`~src.models.records.RawRecord` payloads untouched; normalization
into internal records happens in the reconciler.  Every outbound request
made by an implementation passes through that source's
:class:`~src.resilience.pipeline.ResiliencePipeline`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.config.loader import EventLocation
from src.models.records import RawRecord
from src.resilience.pipeline import ResiliencePipeline


class ISourceClient(ABC):
    """Contract shared by every external source adapter."""

    @abstractmethod
    async def search(self, query: str, page_size: int = 20) -> list[RawRecord]:
        """Run one discovery query against the source.

        Parameters
        ----------
        query:
            Free-text search term.  Must be non-empty after trimming.
        page_size:
            Number of results requested, between 1 and 100.

        Returns
        -------
        list[RawRecord]
            Zero or more raw payloads in source order.

        Raises
        ------
        src.utils.errors.ValidationError
            Empty query or out-of-range page size (no request is made).
        src.utils.errors.TransientSourceError
            Retries exhausted on timeouts / 429 / 5xx.
        src.utils.errors.CircuitOpenError
            The source's breaker is open.
        src.utils.errors.PermanentSourceError
            The source rejected the request or returned an unreadable body.
        """

    @abstractmethod
    async def fetch_detail(self, external_id: str) -> RawRecord:
        """Fetch one record by the source's own identifier."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the source name used in logs and error messages."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the source is configured with credentials."""

    @property
    @abstractmethod
    def pipeline(self) -> ResiliencePipeline:
        """The resilience pipeline every request of this source runs through."""


class ICatalogSource(ISourceClient):
    """A music catalog: artist search plus each artist's popular tracks."""

    @abstractmethod
    async def fetch_top_tracks(self, artist_external_id: str) -> list[RawRecord]:
        """Return the artist's most popular tracks as track records."""


class IEventSource(ISourceClient):
    """A ticketing source: music events, searchable by keyword or location."""

    @abstractmethod
    async def search_location(self, location: EventLocation, page_size: int = 20) -> list[RawRecord]:
        """Return upcoming music events in *location*."""
