"""Logging helpers shared by the package."""

import logging
import os
import sys

logger = logging.getLogger("anomaly_detection")


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """
    Attach a stream handler to the package logger.
    Args:
        level: Logging level name or number. Defaults to the LOG_LEVEL
            environment variable, or INFO when it is unset.
    Returns:
        The configured package logger.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(handler)
    return logger


__all__ = [
    "logger",
    "configure_logging",
]
