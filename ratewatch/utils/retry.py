"""Retry helpers without external dependencies."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS: tuple[type[BaseException], ...] = (OSError, asyncio.TimeoutError)


def retry_async(
    func: Callable[..., Awaitable],
    *,
    attempts: int = 3,
    exceptions: tuple[type[BaseException], ...] = RETRY_EXCEPTIONS,
    delay: float = 1.0,
):
    """Retry ``func`` on ``exceptions`` only; anything else propagates at once."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        wait = delay
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except exceptions as exc:
                if attempt == attempts:
                    raise
                logger.warning("Attempt %s/%s failed: %r; retrying", attempt, attempts, exc)
                await asyncio.sleep(wait * (1 + random.random()))
                wait *= 2

    return wrapper
