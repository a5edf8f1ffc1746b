"""Logging configuration for dmypy-ls.

Stdout carries the LSP stream, so everything goes to a rotating file.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVEL_ENV = "DMYPYLS_LOG_LEVEL"


def resolve_level(level: str | None = None) -> int:
    """Resolve a level name from the argument, $DMYPYLS_LOG_LEVEL, or the default."""
    name = (level or os.environ.get(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(log_path: Path, level: str | None = None) -> None:
    """Configure package logger with a rotating file handler.

    Idempotent: does nothing if a handler is already attached.
    """
    root = logging.getLogger("dmypy_ls")
    if root.handlers:
        return

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(fmt="%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))

    root.setLevel(resolve_level(level))
    root.addHandler(handler)
