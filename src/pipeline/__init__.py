"""Sync cycle orchestration for setlistsync."""

from src.pipeline.cycle_registry import CycleRegistry
from src.pipeline.orchestrator import SyncOrchestrator

__all__ = [
    "CycleRegistry",
    "SyncOrchestrator",
]
