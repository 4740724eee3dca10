"""Unit tests for src/utils/logging.py."""

from __future__ import annotations

import logging

import pytest
import structlog

from src.utils.logging import bind_cycle_context, configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    configure_logging()


class TestConfigureLogging:
    def test_library_loggers_are_held_at_library_level(self) -> None:
        configure_logging(log_level="DEBUG", library_level="ERROR")

        assert logging.getLogger("httpx").level == logging.ERROR
        assert logging.getLogger("aiosqlite").level == logging.ERROR
        assert logging.getLogger().level == logging.DEBUG

    def test_production_env_renders_json(self) -> None:
        configure_logging(app_env="production")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_development_env_renders_console(self) -> None:
        configure_logging(app_env="development")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_get_logger_returns_usable_logger(self) -> None:
        logger = get_logger("tests.logging")
        logger.info("logger_smoke_test", value=1)


class TestBindCycleContext:
    def test_binds_and_resets(self) -> None:
        with bind_cycle_context("cycle-7", "full"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["cycle_id"] == "cycle-7"
            assert bound["sync_type"] == "full"

        assert "cycle_id" not in structlog.contextvars.get_contextvars()
