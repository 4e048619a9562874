"""Structured logging setup for sync runs.

Every module logs through `structlog.get_logger(__name__)` with dotted event
names (`sync.collection_complete`, `pulse_store.upserted`, ...). The engine
binds `run_id` and `direction` as context variables for the length of a run,
so connector and guard events carry them without passing them around.

Production renders one JSON object per line; development uses the console
renderer.
"""

from __future__ import annotations

import logging

import structlog

from src.crm_sync.config import Environment, get_settings

# Libraries whose INFO output would drown the per-batch sync events
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite", "asyncio")


def configure_structlog(log_level: str | None = None) -> None:
    """Configure structlog processors and the stdlib root logger.

    Args:
        log_level: Overrides LOG_LEVEL from settings.
    """
    settings = get_settings()
    level = (log_level or settings.LOG_LEVEL).upper()

    logging.basicConfig(format="%(message)s", level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
