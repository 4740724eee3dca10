"""Public interface definitions for the store and the external sources.

Every external API and the persistent store are accessed exclusively
through the abstract base classes defined in this package.  Concrete
adapters live in ``src/providers/`` and are wired together in
``src/main.py``, so tests can inject fakes or mocks for any of them.

CONCRETE PROVIDER MAP:
    Interface                  →  Concrete implementations (in src/providers/)
    ─────────────────────────────────────────────────────────────────────
    ICatalogSource             →  SpotifyProvider
    IEventSource               →  TicketmasterProvider
    IStoreProvider             →  SQLiteStoreProvider

Re-exports
----------
ISourceClient, ICatalogSource, IEventSource
    External source contracts (search, detail, source-specific extras).
IStoreProvider, UpsertResult, DuplicateKeyError
    Store contract, upsert result and unique-constraint error.
"""

from src.interfaces.source_client import ICatalogSource, IEventSource, ISourceClient
from src.interfaces.store_provider import DuplicateKeyError, IStoreProvider, UpsertResult

__all__ = [
    "DuplicateKeyError",
    "ICatalogSource",
    "IEventSource",
    "ISourceClient",
    "IStoreProvider",
    "UpsertResult",
]
