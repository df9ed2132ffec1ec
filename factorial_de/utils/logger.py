"""
Logging configuration for factorial-de.

Every module asks for its logger through ``get_logger(__name__)``. Loggers of
the ``factorial_de`` package share one level, changed with
``set_package_level``, so a library user or the CLI can make the whole
pipeline quieter or more verbose in one call.
"""

import logging
import sys
from typing import Optional, Union

from rich.logging import RichHandler

PACKAGE = "factorial_de"
LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"

# Level given to package loggers, including ones created later
_package_level = logging.INFO


def _is_package_logger(name: str) -> bool:
    return name == PACKAGE or name.startswith(f"{PACKAGE}.")


def _package_loggers():
    for name in list(logging.Logger.manager.loggerDict):
        if _is_package_logger(name):
            yield logging.getLogger(name)


def _root_has_rich_handler() -> bool:
    return any(isinstance(h, RichHandler) for h in logging.getLogger().handlers)


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    When the root logger carries a RichHandler (the CLI installs one), records
    propagate to it. Otherwise the logger gets its own stdout handler and stops
    propagating, so a ``basicConfig`` handler on root does not print the same
    record twice.

    Args:
        name: Name of the logger
        level: Logging level; package loggers default to the package level

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        if level is None:
            level = _package_level if _is_package_logger(name) else logging.INFO
        logger.setLevel(level)

        if not _root_has_rich_handler():
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger, creating it on first use."""
    return setup_logger(name)


def set_package_level(level: Union[str, int]) -> None:
    """
    Apply ``level`` (e.g. "DEBUG") to every factorial_de logger.

    Loggers created afterwards start at the same level.

    Raises:
        ValueError: If ``level`` is not a known level name
    """
    global _package_level

    numeric = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    _package_level = numeric
    for logger in _package_loggers():
        logger.setLevel(numeric)


def route_to_root(level: Union[str, int]) -> None:
    """
    Send package records to the root logger's handlers at ``level``.

    Loggers created at import time still carry their own stdout handler;
    it is removed so records are printed once, by root.
    """
    for logger in _package_loggers():
        logger.handlers.clear()
        logger.propagate = True
    set_package_level(level)
