"""Logging configuration for host applications and the CLI."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from authbroker.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

NOISY_LOGGERS = ["aiohttp.access", "aiohttp.server", "asyncio"]


def setup_logging(
    level: int | str = DEFAULT_LOG_LEVEL,
    json_format: bool = False,
    log_file: Path | None = None,
    suppress_noisy: bool = True,
) -> logging.Logger:
    """
    Configure the authbroker logger with a console handler and optional file.

    Args:
        level: Log level name or number
        json_format: Emit JSON lines on the console instead of readable text
        log_file: Optional path for a size-rotated JSON log file
        suppress_noisy: Quiet down aiohttp and asyncio loggers

    Returns:
        Configured "authbroker" logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger("authbroker")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    if suppress_noisy:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logger

