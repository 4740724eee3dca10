"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ───────────────────────────────────────────
#
#   1. config/config.yaml  -- discovery queries and static defaults
#   2. .env file           -- local developer overrides (not committed)
#   3. Environment vars    -- set at deploy time
#
# load_config() reads the YAML file first, then deep-merges the
# Settings-derived values on top.  Discovery queries only exist in YAML;
# DiscoveryConfig.from_config() turns them into typed objects for the
# sync orchestrator.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from src.config.settings import Settings
from src.utils.errors import ConfigurationError


class EventLocation(BaseModel):
    """A location-scoped event discovery query."""

    model_config = ConfigDict(frozen=True)

    city: str
    state_code: str | None = None
    country_code: str = "US"


class DiscoveryConfig(BaseModel):
    """The discovery queries a sync cycle runs against both sources."""

    model_config = ConfigDict(frozen=True)

    catalog_queries: list[str] = Field(default_factory=list)
    event_keywords: list[str] = Field(default_factory=list)
    event_locations: list[EventLocation] = Field(default_factory=list)
    page_size: int = Field(default=20, ge=1, le=100)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> DiscoveryConfig:
        """Build from the ``discovery`` section of a loaded config dict."""
        section = config.get("discovery") or {}
        try:
            return cls.model_validate(section)
        except ValueError as exc:
            raise ConfigurationError(message=f"Invalid discovery config: {exc}") from exc


def load_config(path: str = "config/config.yaml", settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Environment variables (via Settings) override YAML values where keys overlap.

    Args:
        path: Path to the YAML configuration file.
        settings: Pre-built settings; a fresh ``Settings()`` is read when omitted.

    Returns:
        Fully resolved configuration dictionary.
    """
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}
    else:
        yaml_config = {}

    settings = settings or Settings()
    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "sources": {
            "configured": settings.get_configured_sources(),
        },
        "sync": {
            "interval_seconds": settings.sync_interval_seconds,
            "deadline_seconds": settings.sync_deadline_seconds,
            "max_concurrency": settings.sync_max_concurrency,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
