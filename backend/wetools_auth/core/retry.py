"""Bounded retry / polling primitives shared by the SDK loader and provider client."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    backoff: float = 1.0,
) -> bool:
    """Evaluate ``predicate`` up to ``attempts`` times, sleeping between tries.

    Returns ``True`` as soon as the predicate holds, ``False`` once the
    attempts are exhausted. Never raises for an unmet condition.
    """
    delay = interval
    for attempt in range(1, attempts + 1):
        if predicate():
            return True
        if attempt < attempts:
            await asyncio.sleep(delay)
            delay *= backoff
    return False


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    interval: float,
    backoff: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``func`` until it succeeds, re-raising the last error when out of attempts."""
    delay = interval
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, attempts, exc, delay,
            )
            await asyncio.sleep(delay)
            delay *= backoff
    raise RuntimeError("retry_async called with attempts < 1")
