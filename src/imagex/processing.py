"""Bounded execution of image requests.

Resolving a request and running its edits block on storage, detector and
Pillow calls. Each request takes a slot from an asyncio semaphore and then
runs on a worker thread; a request that finds no free slot within the queue
timeout is rejected with ``PoolSaturatedError`` (rendered as 503).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from imagex.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of the pool for the health endpoint."""

    capacity: int
    active: int
    queued: int
    rejected: int


class PoolSaturatedError(TimeoutError):
    """No processing slot became free within the queue timeout."""

    def __init__(self, waited: float) -> None:
        super().__init__(f"No processing slot became free within {waited:.1f}s")
        self.waited = waited


class ProcessingPool:
    """Runs blocking image work on a bounded set of worker threads."""

    def __init__(self, settings: Settings, timeout: float | None = None) -> None:
        self._capacity = settings.max_concurrent
        self._timeout = settings.queue_timeout if timeout is None else timeout
        self._slots = asyncio.Semaphore(self._capacity)
        self._workers = ThreadPoolExecutor(max_workers=self._capacity, thread_name_prefix="image-processing")
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0
        self._rejected = 0

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            PoolSaturatedError: If no slot frees up within the queue timeout.
        """
        async with self._slot():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._workers, func, *args)

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                capacity=self._capacity,
                active=self._active,
                queued=self._queued,
                rejected=self._rejected,
            )

    def shutdown(self) -> None:
        self._workers.shutdown(wait=True)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        with self._lock:
            self._queued += 1
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._timeout)
        except TimeoutError:
            with self._lock:
                self._rejected += 1
            logger.warning("All %d processing slots busy for %.1fs; rejecting request", self._capacity, self._timeout)
            raise PoolSaturatedError(self._timeout) from None
        finally:
            with self._lock:
                self._queued -= 1

        with self._lock:
            self._active += 1
        try:
            yield
        finally:
            self._slots.release()
            with self._lock:
                self._active -= 1
