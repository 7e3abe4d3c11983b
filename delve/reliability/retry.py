"""Retry utilities with exponential backoff.

Provides the retry primitive shared by the binary fetcher and any other
operation that may fail transiently, such as a network request.
"""

import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 10.0) -> float:
    """Return the delay before retry ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base_delay * (2**attempt), max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator for retrying functions with exponential backoff.

    Retries the decorated function on specified exceptions, with exponentially
    increasing delays between attempts.

    Args:
        max_retries: Maximum number of attempts (default 3)
        base_delay: Initial delay in seconds (default 1.0)
        max_delay: Maximum delay in seconds (default 10.0)
        exceptions: Tuple of exception types to catch and retry
        retry_if: Optional predicate; a caught exception it rejects is re-raised at once
        on_retry: Optional callback called on each retry with (attempt, exception)
        sleep: Function used to wait between attempts

    Returns:
        Decorated function with retry behavior

    Example:
        @retry_with_backoff(max_retries=3, exceptions=(NetworkError,))
        def fetch_binary():
            return session.get(url, stream=True, timeout=60)
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            if max_retries < 1:
                raise RuntimeError(f"{func.__name__} called with max_retries={max_retries}")

            for attempt in range(max_retries - 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    logger.warning(
                        "%s failed (attempt %d of %d), retrying in %.1fs: %s",
                        func.__name__,
                        attempt + 1,
                        max_retries,
                        delay,
                        e,
                    )
                    if on_retry is not None:
                        on_retry(attempt + 1, e)
                    sleep(delay)

            try:
                return func(*args, **kwargs)
            except exceptions as e:
                logger.error("%s failed after %d attempts: %s", func.__name__, max_retries, e)
                raise

        return wrapper

    return decorator
