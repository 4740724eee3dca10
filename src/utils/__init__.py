"""Utility modules for setlistsync.

Available utility modules (all re-exported here for convenience):

- **errors** -- Domain-specific exception hierarchy rooted at SetlistSyncError;
  the resilience layer, the orchestrator and the API each react to the
  subclass they care about instead of catching ``Exception``.
- **concurrency** -- bounded ``asyncio`` fan-out for discovery queries and
  per-key locks that serialize writes to one natural key.
- **logging** -- structlog setup with a dual-renderer pattern: coloured
  console output in development, structured JSON in production.
- **text_normalizer** -- artist name normalization, fuzzy name similarity
  and URL slug generation.
"""

# -- Domain exception hierarchy --------------------------------------------
from src.utils.errors import (
    CircuitOpenError,
    ConfigurationError,
    CycleInProgressError,
    NotFoundError,
    PermanentSourceError,
    RateLimitedError,
    ReconciliationError,
    SetlistLockedError,
    SetlistSyncError,
    StoreError,
    SyncTimeoutError,
    TransientSourceError,
    UnauthorizedError,
    ValidationError,
)

# -- Async concurrency helpers ---------------------------------------------
from src.utils.concurrency import KeyedLock, throttled_gather

# -- Structured logging setup ----------------------------------------------
from src.utils.logging import bind_cycle_context, configure_logging, get_logger

# -- Name normalization and slugs ------------------------------------------
from src.utils.text_normalizer import name_similarity, normalize_artist_name, slugify

__all__ = [
    "CircuitOpenError",
    "ConfigurationError",
    "CycleInProgressError",
    "KeyedLock",
    "NotFoundError",
    "PermanentSourceError",
    "RateLimitedError",
    "ReconciliationError",
    "SetlistLockedError",
    "SetlistSyncError",
    "StoreError",
    "SyncTimeoutError",
    "TransientSourceError",
    "UnauthorizedError",
    "ValidationError",
    "bind_cycle_context",
    "configure_logging",
    "get_logger",
    "name_similarity",
    "normalize_artist_name",
    "slugify",
    "throttled_gather",
]
