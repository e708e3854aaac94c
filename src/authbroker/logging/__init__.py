"""
Structured logging module.

Provides JSON logging with flow correlation IDs and context propagation.
"""

from authbroker.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from authbroker.logging.context_managers import LogContext, generate_flow_id
from authbroker.logging.formatters import ConsoleFormatter, JSONFormatter
from authbroker.logging.setup import setup_logging
from authbroker.logging.utilities import log_exception, log_with_context

__all__ = [
    # Setup
    "setup_logging",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    "LogContext",
    "generate_flow_id",
    # Utilities
    "log_with_context",
    "log_exception",
]
