"""Minimal logging setup.

One stderr handler is attached to the package root logger; module loggers
(`calendar_sources.core.registry`, ...) are children and propagate to it.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "calendar_sources"


def get_logger(name: str = ROOT_LOGGER_NAME, level: Optional[str] = None) -> logging.Logger:
    """Create (or return) a configured logger.

    Args:
        name: Logger name. Names inside the package namespace share the root handler.
        level: Optional log level string (e.g. "INFO"). If omitted, keeps existing.

    Returns:
        Configured logger writing to stderr.
    """

    in_package = name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}.")
    root = _configure(logging.getLogger(ROOT_LOGGER_NAME if in_package else name))

    if not in_package or name == ROOT_LOGGER_NAME:
        if level is not None:
            root.setLevel(level.upper())
        return root

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


def _configure(logger: logging.Logger) -> logging.Logger:
    logger.propagate = False

    if logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(
            logging.Formatter(fmt="%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)

    return logger
