"""Centralized logging configuration for the Study Shelf application."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, Optional, Union


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "STUDYSHELF_LOG_LEVEL"


def resolve_log_level(value: Optional[Union[str, int]], default: int = logging.INFO) -> int:
    """Translate a level name such as ``"debug"`` (or a number) into a logging level."""

    if value is None:
        return default
    if isinstance(value, int):
        return value
    candidate = value.strip()
    if not candidate:
        return default
    if candidate.isdigit():
        return int(candidate)
    level = logging.getLevelName(candidate.upper())
    return level if isinstance(level, int) else default


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Configure the root logger, attaching *handlers* or a stream handler."""

    logger = logging.getLogger()
    logger.setLevel(level)

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        if handler in logger.handlers:
            continue
        logger.addHandler(handler)

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "study_shelf.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_LEVEL_ENV",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
