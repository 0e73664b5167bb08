"""Retry policy for transport-level downloads using tenacity.

The migration engine itself never retries: re-running an import is safe
because every write is idempotent. Only the media transport retries
transient network failures, a bounded number of times.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def is_transient_error(exc: BaseException) -> bool:
    """Network failures, timeouts and 5xx responses are worth another attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return 500 <= exc.response.status_code < 600
    return isinstance(exc, (httpx.NetworkError, httpx.TimeoutException))


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "download_retrying",
        function=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


def retry_on_network_error(
    max_attempts: int = 2, min_wait: float = 0.5, max_wait: float = 5.0
) -> Callable[[F], F]:
    """Retry decorator for transient download errors.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            @retry(
                stop=stop_after_attempt(max_attempts),
                wait=wait_random_exponential(multiplier=0.5, min=min_wait, max=max_wait),
                retry=retry_if_exception(is_transient_error),
                before_sleep=_log_retry,
                reraise=True,
            )
            def _inner() -> Any:
                return func(*args, **kwargs)

            return _inner()

        return wrapper  # type: ignore

    return decorator
