"""Ticketmaster Discovery API event source.

Implements :class:`IEventSource`: keyword and location searches against
``/discovery/v2/events.json`` restricted to the Music classification and
sorted by date, plus single-event lookups.  Authentication is the
``apikey`` query parameter.
"""

from __future__ import annotations

from typing import Any

import httpx

from src.config.loader import EventLocation
from src.config.settings import Settings
from src.interfaces.source_client import IEventSource
from src.models.records import RawRecord, RecordKind
from src.providers.source._http import (
    MAX_PAGE_SIZE,
    object_list,
    request_json,
    validate_external_id,
    validate_search,
)
from src.resilience.pipeline import ResiliencePipeline
from src.utils.errors import ConfigurationError, ValidationError
from src.utils.logging import get_logger

_API_BASE = "https://app.ticketmaster.com/discovery/v2"
_CLASSIFICATION = "music"
_SORT = "date,asc"


class TicketmasterProvider(IEventSource):
    """Event source backed by the Ticketmaster Discovery API.

    Parameters
    ----------
    settings:
        Supplies ``ticketmaster_api_key`` and the per-request timeout.
    http_client:
        Injected ``httpx.AsyncClient``.
    pipeline:
        Rate limiter, retry policy and breaker for this source.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        pipeline: ResiliencePipeline,
    ) -> None:
        self._api_key = settings.ticketmaster_api_key
        self._timeout = settings.source_timeout_seconds
        self._http = http_client
        self._pipeline = pipeline
        self._logger = get_logger(__name__)

    def get_provider_name(self) -> str:
        return "ticketmaster"

    def is_available(self) -> bool:
        return bool(self._api_key)

    @property
    def pipeline(self) -> ResiliencePipeline:
        return self._pipeline

    async def search(self, query: str, page_size: int = 20) -> list[RawRecord]:
        """Search upcoming music events by keyword (usually an artist name)."""
        trimmed = validate_search(query, page_size, self.get_provider_name())
        records = await self._search_events({"keyword": trimmed, "size": page_size}, "search_events")
        self._logger.info("ticketmaster_search_complete", query=trimmed, result_count=len(records))
        return records

    async def search_location(self, location: EventLocation, page_size: int = 20) -> list[RawRecord]:
        if not location.city.strip():
            raise ValidationError(message="Location city must not be empty", provider_name=self.get_provider_name())
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                message=f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}",
                provider_name=self.get_provider_name(),
            )
        params: dict[str, Any] = {
            "city": location.city.strip(),
            "countryCode": location.country_code,
            "size": page_size,
        }
        if location.state_code:
            params["stateCode"] = location.state_code
        records = await self._search_events(params, "search_events_by_location")
        self._logger.info(
            "ticketmaster_location_search_complete",
            city=location.city,
            state=location.state_code,
            result_count=len(records),
        )
        return records

    async def fetch_detail(self, external_id: str) -> RawRecord:
        event_id = validate_external_id(external_id, self.get_provider_name())
        body = await self._get(f"/events/{event_id}.json", {}, "get_event")
        return self._event_record(body)

    # -- Private helpers -------------------------------------------------------

    async def _search_events(self, params: dict[str, Any], op_name: str) -> list[RawRecord]:
        body = await self._get(
            "/events.json",
            {**params, "classificationName": _CLASSIFICATION, "sort": _SORT},
            op_name,
        )
        # An empty result page has no "_embedded" key at all.
        events = object_list(body, "_embedded", "events", provider_name=self.get_provider_name())
        return [self._event_record(event) for event in events]

    def _event_record(self, payload: dict[str, Any]) -> RawRecord:
        return RawRecord(
            source=self.get_provider_name(),
            kind=RecordKind.EVENT,
            external_id=payload.get("id"),
            payload=payload,
        )

    async def _get(self, path: str, params: dict[str, Any], op_name: str) -> dict[str, Any]:
        if not self.is_available():
            raise ConfigurationError(
                message="Ticketmaster API key is not configured",
                provider_name=self.get_provider_name(),
            )

        async def _operation() -> dict[str, Any]:
            return await request_json(
                self._http,
                "GET",
                f"{_API_BASE}{path}",
                self.get_provider_name(),
                params={**params, "apikey": self._api_key},
                timeout=self._timeout,
            )

        return await self._pipeline.call(_operation, op_name=op_name)
