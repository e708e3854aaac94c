"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to make retry decisions:
- Transient errors: retry with exponential backoff
- Throttling: honour the server-provided retry_after
- Auth/permanent errors: fail immediately (no retry)
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

from authbroker.errors.exceptions import (
    AuthBrokerError,
    ThrottlingError,
    classify_exception,
    is_retryable_error,
    wrap_exception,
)

logger = logging.getLogger(__name__)


def _extract_error_category(wrapped: Exception) -> str:
    """Return a string error category from a wrapped exception."""
    if isinstance(wrapped, AuthBrokerError):
        cat = wrapped.category
    else:
        cat = classify_exception(wrapped)
    return cat.value


def _log_retry_failure(
    func_name: str,
    wrapped: Exception,
    e: Exception,
    error_category: str,
    config: "RetryConfig",
) -> None:
    """Log a non-retryable error or retry exhaustion."""
    error_type = type(wrapped).__name__
    if isinstance(wrapped, AuthBrokerError) and not wrapped.is_retryable:
        logger.warning(
            "Permanent error for %s, not retrying: %s",
            func_name,
            str(e)[:200],
            extra={
                "operation": func_name,
                "error_type": error_type,
                "error_category": error_category,
                "error_message": str(e)[:200],
            },
        )
        return

    logger.error(
        "Max retries exhausted for %s: %s",
        func_name,
        str(e)[:200],
        extra={
            "operation": func_name,
            "error_type": error_type,
            "error_category": error_category,
            "max_attempts": config.max_attempts,
            "error_message": str(e)[:200],
        },
    )


def _safe_invoke_on_retry(
    on_retry: Callable[[Exception, int, float], None],
    wrapped: Exception,
    attempt: int,
    delay: float,
    func_name: str,
) -> None:
    """Call the on_retry callback, logging any errors it raises."""
    try:
        on_retry(wrapped, attempt, delay)
    except Exception as cb_err:
        logger.warning(
            "Error in on_retry callback for %s: %s",
            func_name,
            str(cb_err)[:100],
            extra={"operation": func_name, "callback_error": str(cb_err)[:100]},
        )


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 4
    base_delay: float = 2.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    # If True, use retry_after from ThrottlingError when available
    respect_retry_after: bool = True

    # Optional set of exception types to never retry (overrides classification)
    never_retry: set[type[Exception]] = field(default_factory=set)

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """
        Calculate delay with equal jitter to prevent thundering herd.

        Args:
            attempt: 0-indexed attempt number
            error: Optional exception to check for retry_after

        Returns:
            Delay in seconds
        """
        if (
            self.respect_retry_after
            and isinstance(error, ThrottlingError)
            and error.retry_after
        ):
            return min(error.retry_after, self.max_delay)

        base_delay = self.base_delay * (self.exponential_base**attempt)

        # Equal jitter: half fixed, half random
        jitter = random.uniform(0, base_delay / 2)
        delay = (base_delay / 2) + jitter

        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if error should be retried.

        Args:
            error: The exception that occurred
            attempt: 0-indexed current attempt

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts - 1:
            return False

        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False

        return is_retryable_error(error)


DEFAULT_RETRY = RetryConfig()


def with_retry_async(
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    wrap_errors: bool = True,
):
    """
    Decorator for retrying async functions with exponential backoff.

    Args:
        config: Retry configuration (defaults to DEFAULT_RETRY)
        on_retry: Callback before each retry (error, attempt, delay)
        wrap_errors: If True, wrap unknown exceptions in AuthBrokerError

    Usage:
        @with_retry_async(config=DEFAULT_RETRY)
        async def refresh():
            ...
    """
    if config is None:
        config = DEFAULT_RETRY

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_error: Exception | None = None

            for attempt in range(config.max_attempts):
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 0:
                        logger.info(
                            "Retry succeeded for %s after %d attempts",
                            func.__name__,
                            attempt + 1,
                            extra={
                                "operation": func.__name__,
                                "attempt": attempt + 1,
                                "total_attempts": config.max_attempts,
                            },
                        )

                    return result

                except Exception as e:
                    last_error = e
                    wrapped = (
                        wrap_exception(e)
                        if wrap_errors and not isinstance(e, AuthBrokerError)
                        else e
                    )
                    error_category = _extract_error_category(wrapped)

                    if not config.should_retry(wrapped, attempt):
                        _log_retry_failure(
                            func.__name__, wrapped, e, error_category, config
                        )
                        if wrapped is not e:
                            raise wrapped from e
                        raise

                    delay = config.get_delay(attempt, wrapped)
                    logger.warning(
                        "Retryable error for %s, will retry",
                        func.__name__,
                        extra={
                            "operation": func.__name__,
                            "attempt": attempt + 1,
                            "max_attempts": config.max_attempts,
                            "error_category": error_category,
                            "delay_seconds": round(delay, 2),
                            "error_message": str(e)[:200],
                        },
                    )

                    if on_retry:
                        _safe_invoke_on_retry(
                            on_retry, wrapped, attempt, delay, func.__name__
                        )

                    await asyncio.sleep(delay)

            if last_error:
                raise last_error

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
