"""Tenacity retry wrapper for time-boxed polling of page state."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

T = TypeVar("T")


def with_retry(
    *,
    timeout_seconds: float,
    min_wait_seconds: float = 0.1,
    max_wait_seconds: float = 1.0,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator that gives up after *timeout_seconds*.

    Waits grow exponentially from *min_wait_seconds* to
    *max_wait_seconds*.  The last exception is re-raised on give-up.

    Usage::

        @with_retry(timeout_seconds=30, retryable_exceptions=(PlaywrightError,))
        async def confirm(page: Page) -> None: ...
    """
    return retry(
        stop=stop_after_delay(timeout_seconds),
        wait=wait_exponential(
            multiplier=min_wait_seconds,
            min=min_wait_seconds,
            max=max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )
