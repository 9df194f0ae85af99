"""
loadfleet/utils/async_retry.py

Provides a decorator to retry an async function with exponential backoff.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function is attempted up to `retries` times. The first retry
    waits `delay` seconds and every later wait is multiplied by `backoff`, so
    `delay=0.1, backoff=2` sleeps 0.1, 0.2, 0.4, ... seconds. The last failure
    is re-raised unchanged.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds before the first retry. Defaults to 1.0.
        backoff (float, optional):
            Factor applied to the delay after each retry. Defaults to 1.0 (fixed delay).
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that trigger a retry; anything else propagates at once.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            sleep_time = delay
            total = max(retries, 1)
            for attempt_number in range(1, total + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    last_attempt = attempt_number >= total
                    if noisy:
                        logger.warning(
                            "Attempt %d of %d for %s failed: %s.%s",
                            attempt_number,
                            total,
                            func.__qualname__,
                            exc,
                            ""
                            if last_attempt
                            else f" Sleeping for {int(sleep_time * 1000)} ms.",
                        )
                    if last_attempt:
                        if noisy:
                            logger.error(
                                "All %d attempts failed for %s",
                                total,
                                func.__qualname__,
                            )
                        raise
                    await asyncio.sleep(sleep_time)
                    sleep_time *= backoff
            raise AssertionError("unreachable")

        return wrapper

    return decorator
