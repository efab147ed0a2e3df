"""
kprovision/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with an optional exponential backoff between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt_number: int, delay: float, backoff: float, max_delay: float
) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return min(delay * (backoff ** (attempt_number - 1)), max_delay)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. After the
    n-th failure we sleep `delay * backoff**(n-1)` seconds, capped at
    `max_delay`. Exceptions not listed in `retry_on` propagate immediately.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Values below
            1 still make one attempt. Defaults to 3.
        delay (float, optional):
            Delay in seconds after the first failure. Defaults to 1.0.
        backoff (float, optional):
            Multiplier applied to the delay after each failure. Defaults to 1.0
            (constant delay).
        max_delay (float, optional):
            Upper bound for a single delay. Defaults to 60.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry. Defaults to (Exception,).
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """
    total = max(retries, 1)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt_number = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            total,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number >= total:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %r",
                                total,
                                func.__qualname__,
                            )
                        raise
                    await asyncio.sleep(
                        backoff_delay(attempt_number, delay, backoff, max_delay)
                    )
                    attempt_number += 1

        wrapper.__qualname__ = func.__qualname__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
