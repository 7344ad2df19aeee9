"""Logging configuration for the memindex command line."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {file}:{line} | {function} | {message}"


def init_logger(
    level: str = "WARNING",
    log_to_console: bool = True,
    log_dir: Path | None = None,
) -> None:
    """Replace loguru's default sink with stderr and an optional log file.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_console: Whether to write logs to stderr
        log_dir: Directory for a rotating ``memindex.log``; no file when None
    """

    logger.remove()
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "memindex.log",
            level=level,
            rotation="00:00",
            retention="7 days",
            compression="zip",
            encoding="utf-8",
            format=LOG_FORMAT,
        )
    if log_to_console:
        logger.add(sink=sys.stderr, level=level, format=LOG_FORMAT, colorize=True)
