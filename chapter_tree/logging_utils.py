"""Centralized logging configuration for the chapter tree service."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "chapter_tree.log"


def resolve_log_level(value: int | str) -> int:
    """Translate ``"debug"``/``"INFO"``/``10`` style values into a logging level."""

    if isinstance(value, int):
        return value
    candidate = logging.getLevelName(str(value).strip().upper())
    if not isinstance(candidate, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return candidate


def configure_logging(
    level: int | str = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Configure the root logger, attaching *handlers* (or a stderr stream)."""

    logger = logging.getLogger()
    logger.setLevel(resolve_log_level(level))

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / LOG_FILE_NAME


def build_default_handlers(storage_root: Path) -> List[logging.Handler]:
    """File handler under *storage_root* plus a stream handler, sharing one format."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    return [file_handler, stream_handler]


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "build_default_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
