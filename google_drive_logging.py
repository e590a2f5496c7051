"""
Logging setup shared by the Drive modules.
JSON lines on stdout, level from LOG_LEVEL (default INFO).
"""

import logging
import os
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

_LOGGER_NAMES = set()


def setup_logger(name: str = "google_drive", level: Optional[str] = None) -> logging.Logger:
    """
    Create (or fetch) a logger with a JSON handler.

    - name: logger name, usually __name__ of the calling module
    - level: DEBUG, INFO, WARNING, ...; defaults to the LOG_LEVEL env var

    The handler is attached only once, so calling this repeatedly is safe.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()

    numeric_level = getattr(logging, level, logging.INFO)

    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    logger.setLevel(numeric_level)
    _LOGGER_NAMES.add(name)
    return logger


def set_log_level(level: str) -> None:
    """Apply `level` to every logger created through setup_logger()."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    for name in _LOGGER_NAMES:
        logging.getLogger(name).setLevel(numeric_level)
