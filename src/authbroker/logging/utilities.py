"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (provider_id, session_id, etc.)
                  exc_info=True is passed through to logger.log().

    Example:
        log_with_context(
            logger, logging.INFO, "Session acquired",
            provider_id="github",
            session_id=session.id,
        )
    """
    exc_info = kwargs.pop("exc_info", None)
    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Extracts error_category from AuthBrokerError subclasses and truncates
    long error messages.

    Example:
        try:
            await storage.set(key, value)
        except StorageError as e:
            log_exception(logger, e, "Storage write failed", level=logging.WARNING)
    """
    if kwargs.get("error_category") is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)
