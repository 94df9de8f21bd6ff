"""Logging configuration for the hub.

All loggers live under the ``campus_hub`` namespace so one call to
setup_logging() configures the whole service.
"""
import logging
import sys
from typing import Union

ROOT_LOGGER = "campus_hub"


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a stderr handler to the ``campus_hub`` logger.

    Safe to call more than once: handlers are only added the first time.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
