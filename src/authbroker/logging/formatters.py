"""Log formatters for JSON and console output."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from authbroker.logging.context import get_log_context


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Redacts OAuth codes, states and tokens from URLs before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Identity
        "provider_id",
        "session_id",
        "account",
        "scopes",
        "flow",
        "revoked",
        # HTTP
        "http_status",
        "http_method",
        "http_url",
        "endpoint",
        "path",
        "port",
        "redirect_uri",
        # Errors
        "error_category",
        "error_message",
        "error_type",
        "error",
        "callback_error",
        # Resilience
        "operation",
        "attempt",
        "max_attempts",
        "total_attempts",
        "delay_seconds",
        # Timing
        "interval_seconds",
        "expires_in",
        "expires_at",
        "refresh_in_seconds",
        "timeout_seconds",
        "duration_ms",
        # Counts
        "waiters",
        "session_count",
    ]

    NUMERIC_FIELDS = {
        "http_status": int,
        "port": int,
        "attempt": int,
        "max_attempts": int,
        "total_attempts": int,
        "waiters": int,
        "session_count": int,
        "delay_seconds": float,
        "interval_seconds": float,
        "expires_in": float,
        "refresh_in_seconds": float,
        "timeout_seconds": float,
        "duration_ms": float,
    }

    # Fields that contain URLs and should be sanitized
    URL_FIELDS = ["http_url", "endpoint", "redirect_uri", "url"]

    SENSITIVE_PARAMS_PATTERN = re.compile(
        r"([?&])(code|state|token|access_token|refresh_token|secret|client_secret|code_verifier)=[^&]*",
        re.IGNORECASE,
    )

    def _sanitize_url(self, url: str) -> str:
        return self.SENSITIVE_PARAMS_PATTERN.sub(r"\1\2=[REDACTED]", url)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.URL_FIELDS and isinstance(value, str):
            return self._sanitize_url(value)
        return value

    def _ensure_type(self, field: str, value: Any) -> Any:
        """Coerce numeric fields to their declared type, or None if that fails."""
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        try:
            return self.NUMERIC_FIELDS[field](value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _inject_context(log_entry: dict[str, Any], log_context: dict[str, Any]) -> None:
        for field in ("provider_id", "flow_id", "account"):
            if log_context.get(field):
                log_entry[field] = log_context[field]

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                typed_value = self._ensure_type(field, value)
                if typed_value is None:
                    continue
                log_entry[field] = self._sanitize_value(field, typed_value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self._base_log_entry(record)
        self._inject_context(log_entry, get_log_context())

        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        color = self.COLORS.get(record.levelno, "")
        if not self._use_colors or not color:
            return level_name
        return f"{color}{level_name}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        log_context = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            self._format_level_name(record),
        ]
        if log_context["provider_id"]:
            parts.append(f"[{log_context['provider_id']}]")
        if log_context["flow_id"]:
            parts.append(f"[{log_context['flow_id']}]")

        message = f"{' - '.join(parts)} - {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
