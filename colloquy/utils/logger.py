"""
Logger factory

Usage:
    from colloquy.utils.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import sys
from typing import Optional

from colloquy.config.settings import settings


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Return a named logger with the shared formatter

    Args:
        name: Typically ``__name__`` of the calling module
        level: Explicit level name override; defaults to ``LOG_LEVEL``
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers when the logger already exists
    if not logger.handlers:
        logger.setLevel((level or settings.log_level).upper())

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(handler)
        logger.propagate = False

    return logger
