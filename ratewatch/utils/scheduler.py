"""Per-key request scheduling.

Calls that share a key (one credential set) run one at a time, in submission
order, and consecutive starts are at least ``interval_ms`` apart. Each key
drains its own queue, so unrelated keys never wait on each other. A key is
forgotten once its queue is empty and the spacing window has passed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_MS = int(os.environ.get("SCHEDULER_INTERVAL_MS", 1200))

_Entry = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


def _short(key: str) -> str:
    return key[:8] + "..." if len(key) > 12 else key


class RequestScheduler:
    def __init__(self, *, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        self.interval = interval_ms / 1000.0
        self._queues: dict[str, asyncio.Queue[_Entry]] = {}
        self._drainers: dict[str, asyncio.Task[None]] = {}
        self._last_start: dict[str, float] = {}

    def schedule(self, key: str, task: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``task`` under ``key`` and return a future for its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            logger.info("New queue for key %s (interval %.0fms)", _short(key), self.interval * 1000)
        queue.put_nowait((task, future))
        drainer = self._drainers.get(key)
        if drainer is None or drainer.done():
            self._drainers[key] = loop.create_task(self._drain(key, queue))
        return future

    def pending(self, key: str) -> int:
        queue = self._queues.get(key)
        return queue.qsize() if queue else 0

    async def _drain(self, key: str, queue: asyncio.Queue[_Entry]) -> None:
        try:
            while True:
                if queue.empty():
                    # Hold the key until the spacing window closes so a late arrival still waits.
                    idle = self._last_start.get(key, 0.0) + self.interval - time.monotonic()
                    if idle <= 0:
                        break
                    await asyncio.sleep(idle)
                    continue
                task, future = queue.get_nowait()
                if future.cancelled():
                    continue
                last = self._last_start.get(key)
                if last is not None:
                    wait = last + self.interval - time.monotonic()
                    if wait > 0:
                        await asyncio.sleep(wait)
                self._last_start[key] = time.monotonic()
                try:
                    result = await task()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    if not future.cancelled():
                        future.set_exception(exc)
                except BaseException as exc:
                    if not future.cancelled():
                        future.set_exception(exc)
                    raise
                else:
                    if not future.cancelled():
                        future.set_result(result)
        finally:
            while not queue.empty():
                queue.get_nowait()[1].cancel()
            if self._queues.get(key) is queue:
                del self._queues[key]
                self._drainers.pop(key, None)
                self._last_start.pop(key, None)
                logger.debug("Queue for key %s drained", _short(key))
