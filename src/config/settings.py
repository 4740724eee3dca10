"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# Settings are read from (highest priority first):
#
#   1. **Environment variables** -- e.g. TICKETMASTER_API_KEY=abc123
#   2. **.env file** -- key=value lines in the project root .env file
#   3. The defaults declared below
#
# Field ``catalog_rate_per_second`` maps to env var
# ``CATALOG_RATE_PER_SECOND`` (pydantic-settings uppercases and matches).
#
# Static, non-secret defaults (discovery queries) live in
# config/config.yaml and are merged by src/config/loader.py.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """setlistsync application settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # === External sources ===
    # Empty string = "not configured" → the source reports unavailable and
    # the orchestrator skips it for the cycle.
    spotify_client_id: str = ""
    spotify_client_secret: str = ""
    ticketmaster_api_key: str = ""
    source_timeout_seconds: float = 15.0

    # === Rate limiting (token bucket per source) ===
    catalog_rate_per_second: float = 2.0
    catalog_burst: int = 10
    event_rate_per_second: float = 5.0
    event_burst: int = 5
    rate_limit_max_wait: float = 10.0  # seconds a caller may queue for a token

    # === Retry with backoff ===
    retry_max_attempts: int = 3  # retries after the first attempt
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    retry_jitter: float = 0.25  # ± fraction of the computed delay

    # === Circuit breaker ===
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 60.0

    # === Sync cycle ===
    sync_interval_seconds: float = 0.0  # 0 → external scheduler only
    sync_deadline_seconds: float = 300.0
    sync_max_concurrency: int = 4
    sync_degraded_threshold: float = 0.25  # failed / attempted fraction
    sync_secret: str = ""

    # === Trending ===
    trending_vote_weight: float = 75.0
    trending_show_boost: float = 1000.0
    trending_max_limit: int = 50

    # === Vote path ===
    vote_rate_per_second: float = 2.0
    vote_burst: int = 10

    # === Store ===
    store_db_path: str = "data/setlistsync.db"

    # === App Config ===
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"
    library_log_level: str = "WARNING"
    config_path: str = "config/config.yaml"

    def get_configured_sources(self) -> list[str]:
        """Return the names of external sources that have credentials configured."""
        sources: list[str] = []
        if self.spotify_client_id and self.spotify_client_secret:
            sources.append("spotify")
        if self.ticketmaster_api_key:
            sources.append("ticketmaster")
        return sources
