"""Centralized logging configuration."""

import logging
from typing import Optional


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str, level: Optional[str] = "INFO") -> logging.Logger:
    """Get a configured logger instance.

    A stream handler is attached only once per logger name so repeated
    calls do not duplicate output. Pass ``level=None`` to leave the
    logger's level untouched.
    """
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper()))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
