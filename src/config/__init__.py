"""Configuration module -- exports Settings, load_config, and the discovery model."""

from src.config.loader import DiscoveryConfig, EventLocation, load_config
from src.config.settings import Settings

__all__ = ["DiscoveryConfig", "EventLocation", "Settings", "load_config"]
