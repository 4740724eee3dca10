"""Spotify Web API catalog source.

Implements :class:`ICatalogSource` with the client-credentials flow: an
app token is fetched from the accounts service, cached, and refreshed a
minute before it expires.  Artist search, artist detail and top tracks
are plain ``GET`` requests against ``/v1``.

Every request (token refresh included) runs inside the source's
:class:`ResiliencePipeline`, so a slow token endpoint is retried and
counted against the same breaker as the API itself.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx

from src.config.settings import Settings
from src.interfaces.source_client import ICatalogSource
from src.models.records import RawRecord, RecordKind
from src.providers.source._http import object_list, request_json, validate_external_id, validate_search
from src.resilience.pipeline import ResiliencePipeline
from src.utils.errors import ConfigurationError, PermanentSourceError, TransientSourceError
from src.utils.logging import get_logger

_TOKEN_URL = "https://accounts.spotify.com/api/token"
_API_BASE = "https://api.spotify.com/v1"
_TOKEN_REFRESH_MARGIN = 60.0  # seconds before expiry a token is considered stale
_DEFAULT_MARKET = "US"


class SpotifyProvider(ICatalogSource):
    """Catalog source backed by the Spotify Web API.

    Parameters
    ----------
    settings:
        Supplies ``spotify_client_id`` / ``spotify_client_secret`` and the
        per-request timeout.
    http_client:
        Injected ``httpx.AsyncClient`` for testability and connection pooling.
    pipeline:
        Rate limiter, retry policy and breaker for this source.
    clock:
        Monotonic clock used for token expiry (injectable for tests).
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        pipeline: ResiliencePipeline,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = settings.spotify_client_id
        self._client_secret = settings.spotify_client_secret
        self._timeout = settings.source_timeout_seconds
        self._http = http_client
        self._pipeline = pipeline
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self._logger = get_logger(__name__)

    # -- ISourceClient ---------------------------------------------------------

    def get_provider_name(self) -> str:
        return "spotify"

    def is_available(self) -> bool:
        return bool(self._client_id and self._client_secret)

    @property
    def pipeline(self) -> ResiliencePipeline:
        return self._pipeline

    async def search(self, query: str, page_size: int = 20) -> list[RawRecord]:
        """Search the catalog for artists matching *query*."""
        trimmed = validate_search(query, page_size, self.get_provider_name())
        body = await self._get(
            "/search",
            params={"q": trimmed, "type": "artist", "limit": page_size},
            op_name="search_artists",
        )
        items = object_list(body, "artists", "items", provider_name=self.get_provider_name())
        records = [self._artist_record(item) for item in items]
        self._logger.info("spotify_search_complete", query=trimmed, result_count=len(records))
        return records

    async def fetch_detail(self, external_id: str) -> RawRecord:
        artist_id = validate_external_id(external_id, self.get_provider_name())
        body = await self._get(f"/artists/{artist_id}", op_name="get_artist")
        return self._artist_record(body)

    async def fetch_top_tracks(self, artist_external_id: str) -> list[RawRecord]:
        artist_id = validate_external_id(artist_external_id, self.get_provider_name())
        body = await self._get(
            f"/artists/{artist_id}/top-tracks",
            params={"market": _DEFAULT_MARKET},
            op_name="get_top_tracks",
        )
        tracks = object_list(body, "tracks", provider_name=self.get_provider_name())
        return [
            RawRecord(
                source=self.get_provider_name(),
                kind=RecordKind.TRACK,
                external_id=track.get("id"),
                payload=track,
            )
            for track in tracks
        ]

    # -- Private helpers -------------------------------------------------------

    def _artist_record(self, payload: dict[str, Any]) -> RawRecord:
        return RawRecord(
            source=self.get_provider_name(),
            kind=RecordKind.ARTIST,
            external_id=payload.get("id"),
            payload=payload,
        )

    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        op_name: str = "get",
    ) -> dict[str, Any]:
        if not self.is_available():
            raise ConfigurationError(
                message="Spotify credentials are not configured",
                provider_name=self.get_provider_name(),
            )

        async def _operation() -> dict[str, Any]:
            token = await self._get_token()
            try:
                return await request_json(
                    self._http,
                    "GET",
                    f"{_API_BASE}{path}",
                    self.get_provider_name(),
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self._timeout,
                )
            except PermanentSourceError as exc:
                if exc.status_code != 401:
                    raise
                # Token revoked or expired early: drop it and let the retry refetch.
                self._token = None
                raise TransientSourceError(
                    message="Spotify rejected the access token",
                    provider_name=self.get_provider_name(),
                    status_code=401,
                ) from exc

        return await self._pipeline.call(_operation, op_name=op_name)

    async def _get_token(self) -> str:
        """Return a cached app token, refreshing it when close to expiry."""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at - _TOKEN_REFRESH_MARGIN:
                return self._token

            body = await request_json(
                self._http,
                "POST",
                _TOKEN_URL,
                self.get_provider_name(),
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._client_secret),
                timeout=self._timeout,
            )
            token = body.get("access_token")
            if not token:
                raise PermanentSourceError(
                    message="Token response carried no access_token",
                    provider_name=self.get_provider_name(),
                )
            self._token = str(token)
            self._token_expires_at = self._clock() + float(body.get("expires_in") or 3600)
            self._logger.debug("spotify_token_refreshed", expires_in=body.get("expires_in"))
            return self._token
