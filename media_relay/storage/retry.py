"""Retry mechanisms for remote storage calls."""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from media_relay.core.logging import get_logger

logger = get_logger()

T = TypeVar("T")


def with_retry(
    max_retries: int = 2,
    base_delay: float = 0.2,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError),
    should_retry: Callable[[BaseException], bool] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that adds retry logic with exponential backoff to a coroutine.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplier for exponential backoff
        retry_on: Tuple of exception types to retry on
        should_retry: Optional predicate narrowing which errors are transient

    Returns:
        Decorated coroutine function with retry logic
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    transient = should_retry(e) if should_retry else True
                    if not transient or attempt == max_retries:
                        raise

                    delay = min(base_delay * (backoff_factor**attempt), max_delay)
                    logger.debug(
                        "storage_call_retry",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=max_retries + 1,
                        error=str(e),
                        delay=round(delay, 2),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator
