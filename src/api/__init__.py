"""setlistsync API layer -- routes, schemas, and middleware."""

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
    status_for_error,
)
from src.api.routes import router
from src.api.schemas import (
    CastVoteRequest,
    ErrorResponse,
    HealthResponse,
    SyncCycleResponse,
    TrendingResponse,
    TriggerSyncRequest,
    VoteCountsResponse,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
    "status_for_error",
    "CastVoteRequest",
    "ErrorResponse",
    "HealthResponse",
    "SyncCycleResponse",
    "TrendingResponse",
    "TriggerSyncRequest",
    "VoteCountsResponse",
]
