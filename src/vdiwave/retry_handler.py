"""Retry with exponential backoff for idempotent broker reads.

Listing pools, listing clones and snapshot lookups are safe to repeat, so
transient network failures and throttling or gateway responses
(408, 429, 5xx) on those calls are retried. Maintenance commands
are never retried here: the broker owns retry policy for scheduled tasks.

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def list_pools(self):
        ...
"""

import functools
import logging
import random
import re
import time
from typing import Any, Callable, TypeVar

import requests

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class TransientHTTPError(requests.HTTPError):
    """HTTP response whose status code means "try again later"."""

    pass


DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientHTTPError,
    requests.ConnectionError,
    requests.Timeout,
    ConnectionResetError,
    TimeoutError,
)


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add +/-25% random jitter to each delay (default: True)
        retryable_exceptions: Exception types to retry
            (default: connection errors, timeouts and transient HTTP statuses)

    Returns:
        Decorated function that retries on transient failures
    """
    if retryable_exceptions is None:
        retryable_exceptions = DEFAULT_RETRYABLE_EXCEPTIONS

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 1:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}")
                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{safe_error_message(e)}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {safe_error_message(e)}"
                    )
                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} failed with unknown error")

        return wrapper  # type: ignore

    return decorator


def should_retry_http_error(status_code: int) -> bool:
    """Determine if HTTP status code should trigger retry.

    Retryable status codes:
        - 408: Request Timeout
        - 429: Too Many Requests (throttling)
        - 500: Internal Server Error
        - 502: Bad Gateway
        - 503: Service Unavailable
        - 504: Gateway Timeout
    """
    return status_code in RETRYABLE_STATUS_CODES


_SENSITIVE_PATTERN = re.compile(
    r"(token|password|secret|authorization)([=:]\s*)\S+", flags=re.IGNORECASE
)


def safe_error_message(exception: Exception) -> str:
    """Truncate and redact an exception message for logging.

    Args:
        exception: Exception to describe

    Returns:
        Message with credential-looking values replaced by ***
    """
    error_str = str(exception)
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return _SENSITIVE_PATTERN.sub(r"\1\2***", error_str)


__all__ = [
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "RETRYABLE_STATUS_CODES",
    "TransientHTTPError",
    "retry_with_exponential_backoff",
    "safe_error_message",
    "should_retry_http_error",
]
