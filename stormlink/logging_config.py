"""
Logging configuration for the connection manager.

Every module logs through a child of the ``stormlink`` logger; applications
call ``setup_logging`` once with their ``DebugConfig`` to attach handlers.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

from .config import DebugConfig

ROOT_LOGGER_NAME = "stormlink"

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    debug: Optional[DebugConfig] = None,
    *,
    log_level: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
    log_to_console: bool = True
) -> logging.Logger:
    """
    Attach handlers to the ``stormlink`` logger.

    Args:
        debug: Debug settings supplying the level and log file. Defaults to ``DebugConfig()``.
        log_level: Overrides the configured level (DEBUG, INFO, WARNING, ERROR)
        log_file: Overrides the configured log file
        log_to_console: Whether to log to stdout

    Returns:
        The package root logger
    """
    debug = debug or DebugConfig()
    level_name = log_level or debug.log_level
    log_file = log_file or debug.log_file
    level = getattr(logging, level_name.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = []
    if log_to_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a child logger for a specific module."""
    if name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_with_context(logger: logging.Logger, level: int, msg: str, **context) -> None:
    """Log a message with additional key=value context."""
    context_str = " | ".join(f"{k}={v}" for k, v in context.items())
    if context_str:
        msg = f"{msg} [{context_str}]"

    logger.log(level, msg)
