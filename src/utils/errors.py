"""Custom exception hierarchy for setlistsync.

All application exceptions inherit from :class:`SetlistSyncError`, which
carries an optional ``provider_name`` so error handlers can identify which
external source (e.g. "spotify", "ticketmaster") caused the failure.

The hierarchy is organized by the path that raises it:

    SetlistSyncError  (base -- catch-all for any setlistsync error)
    +-- TransientSourceError     (timeouts, 429, 5xx -- retried)
    |   +-- CircuitOpenError     (breaker open -- fail fast, no I/O)
    +-- PermanentSourceError     (4xx, malformed payload -- not retried)
    +-- RateLimitedError         (local limiter wait exceeded)
    +-- ReconciliationError      (identity / slug resolution exhausted)
    +-- NotFoundError            (unknown entity id)
    +-- SetlistLockedError       (vote on a locked setlist)
    +-- UnauthorizedError        (missing voter / bad sync secret)
    +-- SyncTimeoutError         (cycle deadline expired)
    +-- CycleInProgressError     (trigger while a cycle runs)
    +-- ValidationError          (bad caller input)
    +-- ConfigurationError       (startup / missing config)
    +-- StoreError               (store adapter misuse)

The resilience layer retries only ``TransientSourceError``; the sync
orchestrator counts everything else per record; the vote path surfaces
every error to the caller unchanged.
"""


class SetlistSyncError(Exception):
    """Base exception for all setlistsync errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external source triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[spotify] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# External source errors
# ---------------------------------------------------------------------------

class TransientSourceError(SetlistSyncError):
    """Raised for failures worth retrying: timeouts, 429 and 5xx responses.

    ``retry_after`` is populated from the provider's ``Retry-After`` header
    when one was sent, and is honoured as a floor by the retry policy.
    """

    def __init__(
        self,
        message: str = "External source temporarily unavailable",
        provider_name: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.status_code = status_code
        self.retry_after = retry_after


class CircuitOpenError(TransientSourceError):
    """Raised without any network I/O while a source's breaker is open."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class PermanentSourceError(SetlistSyncError):
    """Raised for failures that will not improve on retry (4xx, bad payload)."""

    def __init__(
        self,
        message: str = "External source rejected the request",
        provider_name: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.status_code = status_code


class RateLimitedError(SetlistSyncError):
    """Raised when a rate limiter cannot grant a token within its max wait.

    Callers should back off and resubmit.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Reconciliation / sync errors
# ---------------------------------------------------------------------------

class ReconciliationError(SetlistSyncError):
    """Raised when a record cannot be mapped to a stable internal identity."""

    def __init__(
        self,
        message: str = "Record reconciliation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class SyncTimeoutError(SetlistSyncError):
    """Raised when a sync cycle exceeds its deadline."""

    def __init__(
        self,
        message: str = "Sync cycle deadline exceeded",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class CycleInProgressError(SetlistSyncError):
    """Raised when a sync is triggered while another cycle is still running."""

    def __init__(self, cycle_id: str) -> None:
        super().__init__(message=f"Sync cycle {cycle_id} is already running")
        self.cycle_id = cycle_id


# ---------------------------------------------------------------------------
# Caller-input errors (vote path)
# ---------------------------------------------------------------------------

class NotFoundError(SetlistSyncError):
    """Raised when an entity id does not resolve to a stored row."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(message=f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class SetlistLockedError(SetlistSyncError):
    """Raised when a vote targets an entry of a locked setlist."""

    def __init__(self, setlist_id: object) -> None:
        super().__init__(message="Setlist is locked")
        self.setlist_id = setlist_id


class UnauthorizedError(SetlistSyncError):
    """Raised when the caller is not identified or lacks the sync secret."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message=message)


class ValidationError(SetlistSyncError):
    """Raised when caller input fails validation (empty query, bad page size)."""

    def __init__(
        self,
        message: str = "Invalid input",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Configuration / infrastructure errors
# ---------------------------------------------------------------------------

class ConfigurationError(SetlistSyncError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class StoreError(SetlistSyncError):
    """Raised when the store is called with an unknown table or column."""

    def __init__(self, message: str = "Store operation failed") -> None:
        super().__init__(message=message)
