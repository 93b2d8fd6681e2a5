"""
Logging Utilities
=================

Unified logging for the bird's-eye view pipeline. A root logger ``birdview``
carries the handlers; every module obtains a child logger.

Usage:
    from birdview.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "birdview"

MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

_initialized = False


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level name for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        color = self.COLORS.get(original, self.RESET)
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logger(level: int = logging.INFO,
                 log_file: Optional[Union[str, Path]] = None,
                 use_color: bool = True) -> logging.Logger:
    """
    Configure the root ``birdview`` logger. Call once at application startup.

    Args:
        level: Console log level
        log_file: Optional path of a rotating log file (records everything)
        use_color: Whether to colour console level names

    Returns:
        Configured root logger
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if _initialized:
        set_log_level(level)
        return logger

    logger.setLevel(logging.DEBUG if log_file else level)
    logger.propagate = False

    fmt = "%(levelname)s | %(asctime)s | %(name)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter_cls = ColoredFormatter if use_color else logging.Formatter

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter_cls(fmt=fmt, datefmt=datefmt))
    logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(file_handler)

    _initialized = True
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Return a child of the ``birdview`` root logger.

    Module names already inside the package (``birdview.remap``) are used
    as-is; anything else (``__main__``) is nested under the root.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: int) -> None:
    """Change the console level at runtime; file handlers keep DEBUG."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            continue
        handler.setLevel(level)
    if not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers):
        root.setLevel(level)
