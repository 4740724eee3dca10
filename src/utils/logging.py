"""Structured logging for setlistsync, built on structlog.

Every event goes through one shared processor chain: context vars, level,
stack info, exc info and an ISO timestamp.  Only the final renderer
differs.  Development gets a coloured console, and production (or
``json_output=True``) gets one JSON object per line for log shipping.

A sync cycle issues hundreds of outbound requests and store writes, and
httpx and aiosqlite log each one at INFO or DEBUG.  Those library loggers
are held at ``library_level`` (WARNING by default) so the cycle's own
events stay readable.  Whatever they do emit goes through the same
formatter as everything else.

Sync cycles bind ``cycle_id`` and ``sync_type`` with
:func:`bind_cycle_context`.  Every event logged while a cycle runs then
carries both, including events from the source clients and the
reconciler.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Third-party loggers that narrate every request or statement.
_CHATTY_LIBRARIES = ("httpx", "httpcore", "aiosqlite")


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = False,
    app_env: str = "development",
    library_level: str = "WARNING",
) -> structlog.BoundLogger:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Level for setlistsync's own events.
        json_output: Force JSON rendering.  JSON is also chosen when
                     *app_env* is ``"production"``.
        app_env: Deployment environment, normally ``Settings.app_env``.
        library_level: Floor applied to the request-level library loggers.

    Returns:
        A configured structlog BoundLogger.
    """
    use_json = json_output or app_env == "production"

    # merge_contextvars first so cycle_id lands on every event.
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if use_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *shared_processors,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level.upper())

    return structlog.get_logger()


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a structlog logger bound to *name*, configuring defaults on first use."""
    if not structlog.is_configured():
        configure_logging()

    return structlog.get_logger(logger_name=name)


@contextmanager
def bind_cycle_context(cycle_id: str, sync_type: str) -> Iterator[None]:
    """Bind sync-cycle identifiers into structlog contextvars for a block."""
    tokens = structlog.contextvars.bind_contextvars(cycle_id=cycle_id, sync_type=sync_type)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
