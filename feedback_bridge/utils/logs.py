"""Loguru sink setup."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger


def configure_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Route logs to stderr and, optionally, a rotating file.

    stdout stays clean so an agent can speak a protocol over it.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, level=level.upper(), rotation="1 day", retention="7 days", enqueue=False)
