"""setlistsync FastAPI application entry point.

Wires together providers, resilience pipelines, services and routes via
dependency injection.  Loads configuration from ``.env`` and
``config/config.yaml`` and configures structured logging.

Also provides the standalone ``run_sync_once`` helper so an external
scheduler (cron, a job runner) can execute one cycle without the web
server.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from src.api.routes import router as api_router
from src.config.loader import DiscoveryConfig, load_config
from src.config.settings import Settings
from src.models.sync import SyncCycle, SyncType
from src.pipeline.cycle_registry import CycleRegistry
from src.pipeline.orchestrator import SyncOrchestrator
from src.providers.source.spotify_provider import SpotifyProvider
from src.providers.source.ticketmaster_provider import TicketmasterProvider
from src.providers.store.sqlite_store_provider import SQLiteStoreProvider
from src.resilience import CircuitBreaker, ResiliencePipeline, RetryPolicy, TokenBucket, VoterRateLimiter
from src.services.reconciler import Reconciler
from src.services.trending_scorer import TrendingScorer
from src.services.vote_aggregator import VoteAggregator
from src.utils.concurrency import KeyedLock
from src.utils.logging import configure_logging, get_logger

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Module-level settings & logging
# ---------------------------------------------------------------------------

settings = Settings()

configure_logging(
    log_level=settings.log_level,
    app_env=settings.app_env,
    library_level=settings.library_log_level,
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Component construction
# ---------------------------------------------------------------------------


def _build_resilience(name: str, rate: float, burst: int, app_settings: Settings) -> ResiliencePipeline:
    """One limiter + breaker + retry policy per external source."""
    return ResiliencePipeline(
        name=name,
        limiter=TokenBucket(
            rate=rate,
            burst=burst,
            max_wait=app_settings.rate_limit_max_wait,
            name=name,
        ),
        breaker=CircuitBreaker(
            name=name,
            failure_threshold=app_settings.breaker_failure_threshold,
            reset_timeout=app_settings.breaker_reset_timeout,
        ),
        retry=RetryPolicy(
            max_attempts=app_settings.retry_max_attempts,
            base_delay=app_settings.retry_base_delay,
            max_delay=app_settings.retry_max_delay,
            jitter=app_settings.retry_jitter,
        ),
    )


def _build_all(app_settings: Settings, config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Construct every provider and service instance for the application.

    Returns a flat dict of named components to be stored on ``app.state``.
    """
    config = config if config is not None else load_config(app_settings.config_path, app_settings)

    # -- Shared resources --
    http_client = httpx.AsyncClient(timeout=app_settings.source_timeout_seconds)
    store = SQLiteStoreProvider(app_settings.store_db_path)
    locks = KeyedLock()

    # -- External sources, each behind its own resilience pipeline --
    catalog = SpotifyProvider(
        app_settings,
        http_client,
        _build_resilience(
            "spotify",
            app_settings.catalog_rate_per_second,
            app_settings.catalog_burst,
            app_settings,
        ),
    )
    events = TicketmasterProvider(
        app_settings,
        http_client,
        _build_resilience(
            "ticketmaster",
            app_settings.event_rate_per_second,
            app_settings.event_burst,
            app_settings,
        ),
    )

    # -- Services --
    reconciler = Reconciler(store, catalog=catalog, locks=locks)
    vote_aggregator = VoteAggregator(
        store,
        rate_limiter=VoterRateLimiter(app_settings.vote_rate_per_second, app_settings.vote_burst),
    )
    trending_scorer = TrendingScorer(
        store,
        vote_weight=app_settings.trending_vote_weight,
        show_boost=app_settings.trending_show_boost,
        max_limit=app_settings.trending_max_limit,
    )

    # -- Sync pipeline --
    orchestrator = SyncOrchestrator(
        store=store,
        reconciler=reconciler,
        vote_aggregator=vote_aggregator,
        catalog=catalog,
        events=events,
        discovery=DiscoveryConfig.from_config(config),
        max_concurrency=app_settings.sync_max_concurrency,
        deadline_seconds=app_settings.sync_deadline_seconds,
        degraded_threshold=app_settings.sync_degraded_threshold,
    )
    cycle_registry = CycleRegistry(orchestrator)

    return {
        "settings": app_settings,
        "config": config,
        "http_client": http_client,
        "store": store,
        "sources": {"spotify": catalog, "ticketmaster": events},
        "reconciler": reconciler,
        "vote_aggregator": vote_aggregator,
        "trending_scorer": trending_scorer,
        "orchestrator": orchestrator,
        "cycle_registry": cycle_registry,
    }


async def run_sync_once(
    sync_type: SyncType = SyncType.FULL,
    custom_settings: Settings | None = None,
) -> SyncCycle:
    """Run a single sync cycle outside the web server and return its report."""
    components = _build_all(custom_settings or settings)
    await components["store"].initialize()
    registry: CycleRegistry = components["cycle_registry"]
    try:
        cycle = registry.trigger(sync_type)
        return await registry.wait(cycle.cycle_id)
    finally:
        await components["http_client"].aclose()


# ---------------------------------------------------------------------------
# Application lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


def _make_lifespan(app_settings: Settings):  # noqa: ANN202
    @asynccontextmanager
    async def _lifespan(application: FastAPI):  # noqa: ANN201
        """Initialise providers and services on startup, clean up on shutdown."""
        components = _build_all(app_settings)
        for key, value in components.items():
            setattr(application.state, key, value)

        await components["store"].initialize()

        registry: CycleRegistry = components["cycle_registry"]
        schedule_task: asyncio.Task[None] | None = None
        if app_settings.sync_interval_seconds > 0:
            schedule_task = asyncio.create_task(
                registry.run_schedule(app_settings.sync_interval_seconds)
            )

        _logger.info(
            "app_startup",
            version=_VERSION,
            environment=app_settings.app_env,
            sources=app_settings.get_configured_sources(),
            sync_interval_seconds=app_settings.sync_interval_seconds,
        )

        yield

        if schedule_task is not None:
            schedule_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await schedule_task
        await registry.shutdown()
        await components["http_client"].aclose()
        _logger.info("app_shutdown", message="HTTP client closed")

    return _lifespan


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build and configure the FastAPI application."""
    app_settings = app_settings or settings
    application = FastAPI(
        title="setlistsync API",
        version=_VERSION,
        description=(
            "Artist and show sync from a music catalog and a ticketing source, "
            "setlist voting with denormalized counters, and trending rankings."
        ),
        lifespan=_make_lifespan(app_settings),
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application)

    # -- API routes --
    application.include_router(api_router)
    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
