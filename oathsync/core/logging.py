"""Structured logging for the sync engine.

Library modules log through stdlib ``logging.getLogger(__name__)``;
structlog renders the output. Each run binds its run_id into the
structlog context so every line of one run can be correlated.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from oathsync.config import AppConfig

LOG_FILE_NAME = "oathsync.log"


def _processors(json_logs: bool) -> list[Any]:
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_logs:
        # Scheduled runs: one JSON object per line
        return shared + [structlog.processors.JSONRenderer()]
    return shared + [structlog.dev.ConsoleRenderer()]


def _handlers(log_dir: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir and Path(log_dir).is_dir():
        handlers.append(logging.FileHandler(Path(log_dir) / LOG_FILE_NAME))
    return handlers


def configure_logging(config: AppConfig) -> None:
    """Configure structlog and the stdlib root logger from AppConfig.

    Uses ``config.log_level``, ``config.json_logs`` (JSON vs console
    rendering) and ``config.log_dir`` (file output only when the
    directory already exists).
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=_processors(config.json_logs),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", handlers=_handlers(config.log_dir), level=level)
    # basicConfig is a no-op when handlers are already installed
    logging.getLogger().setLevel(level)


def bind_run_context(**values: Any) -> None:
    """Attach run-scoped values (run_id, phase) to every log line."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()
