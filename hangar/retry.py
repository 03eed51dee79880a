"""Generic retry decorator with exponential backoff.

Provides the retry mechanism used around EC2 API calls. Throttled and
transient failures are retried; everything else surfaces immediately.

Example:
    from hangar.retry import retry

    # Retry only on specific exceptions
    @retry(on=IaasThrottled)
    async def describe():
        ...

    # Retry with custom predicate
    @retry(on=lambda e: getattr(e, "retryable", False))
    async def run_instances():
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from loguru import logger

P = ParamSpec("P")
T = TypeVar("T")

# Type for the retry predicate
RetryPredicate = Callable[[Exception], bool]


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.2,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    The jitter is symmetric: the delay is scaled by a random factor in
    ``[1 - jitter, 1 + jitter]``, then capped at ``max_delay``.
    """
    delay = base_delay * (exponential_base**attempt)
    if jitter:
        delay *= random.uniform(1.0 - jitter, 1.0 + jitter)
    return min(delay, max_delay)


def retry(
    on: type[Exception] | tuple[type[Exception], ...] | RetryPredicate = Exception,
    max_attempts: int = 6,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.2,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator that retries async functions with exponential backoff.

    Args:
        on: When to retry. Can be:
            - An exception class (retry on that exception and subclasses)
            - A tuple of exception classes (retry on any of them)
            - A callable predicate (retry when predicate returns True)
            Default: retry on any Exception.
        max_attempts: Maximum number of attempts (including the first one).
        base_delay: Initial delay in seconds before first retry.
        exponential_base: Multiplier for exponential backoff.
            Delay formula: min(base_delay * (exponential_base ** attempt) * jitter factor, max_delay)
        max_delay: Maximum delay cap in seconds.
        jitter: Relative jitter applied around the delay (0.2 means ±20%).

    Returns:
        Decorated async function with retry behavior.
    """
    if isinstance(on, type) and issubclass(on, Exception):
        should_retry: RetryPredicate = lambda e: isinstance(e, on)
    elif isinstance(on, tuple):
        should_retry = lambda e: isinstance(e, on)
    else:
        should_retry = on

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    has_retries_left = attempt < max_attempts - 1

                    if should_retry(e) and has_retries_left:
                        delay = backoff_delay(
                            attempt, base_delay, exponential_base, max_delay, jitter,
                        )
                        logger.warning(
                            "Retry {n}/{total} of {fn} after {err_type}: {err}. Waiting {delay:.1f}s...",
                            n=attempt + 1,
                            total=max_attempts,
                            fn=func.__name__,
                            err_type=type(e).__name__,
                            err=e,
                            delay=delay,
                        )
                        await asyncio.sleep(delay)
                        continue

                    raise

            assert last_exception is not None
            raise last_exception

        return wrapper  # type: ignore[return-value]

    return decorator


# =============================================================================
# Common Predicates
# =============================================================================


def is_retryable(e: Exception) -> bool:
    """Retry errors that declare themselves retryable (throttled, transient)."""
    return bool(getattr(e, "retryable", False))
