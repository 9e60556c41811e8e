"""
logging_config.py - Shared logging setup for the reconciliation tool.

Every module logs through `get_logger(__name__)` with pipe-delimited
`event | key=value` messages so a session can be traced end-to-end.
"""

from __future__ import annotations

import functools
import logging
import os
import sys
from typing import Callable, TypeVar

T = TypeVar("T")

TEXT_FORMAT = "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s"
JSON_FORMAT = (
    '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
    '"module":"%(name)s","message":"%(message)s"}'
)


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.getenv("RECON_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: int | str | None = logging.INFO, json_format: bool = False) -> None:
    """Configure the root logger.

    Args:
        level: Logging level or level name. None reads RECON_LOG_LEVEL.
        json_format: If True, emit JSON-like log lines.
    """
    root = logging.getLogger()
    root.setLevel(_resolve_level(level))
    root.handlers.clear()

    formatter = logging.Formatter(
        JSON_FORMAT if json_format else TEXT_FORMAT,
        datefmt="%H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def graceful(default_factory: Callable[[], T], log_level: int = logging.ERROR):
    """Decorator that logs an exception and returns `default_factory()` instead.

    Used at collaborator boundaries where a failure must leave the
    reconciliation state untouched rather than propagate.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logger = logging.getLogger(func.__module__)
                logger.log(
                    log_level,
                    "%s_failed | error_type=%s | error=%s | fallback=default",
                    func.__name__,
                    type(exc).__name__,
                    exc,
                    exc_info=True,
                )
                return default_factory()

        return wrapper

    return decorator
