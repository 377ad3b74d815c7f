"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> face analysis

Requests beyond the semaphore limit queue for ``queue_timeout`` seconds, then
get 503. Startup enrollment goes through the same pool so it never competes
with requests for more than N threads.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from faceprofile.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounded pool of worker threads for the blocking face models."""

    def __init__(self, settings: Settings) -> None:
        self._timeout = settings.queue_timeout
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="face-analysis",
        )
        self._counts = {"waiting": 0, "running": 0}
        self._counter_lock = threading.Lock()

    @contextmanager
    def _counted(self, state: str) -> Iterator[None]:
        with self._counter_lock:
            self._counts[state] += 1
        try:
            yield
        finally:
            with self._counter_lock:
                self._counts[state] -= 1

    async def _acquire_slot(self, timeout: float) -> None:
        with self._counted("waiting"):
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=timeout)
            except TimeoutError:
                logger.warning("Inference queue full, rejecting request after %.1fs", timeout)
                raise

    async def run(self, func: Callable[..., T], *args: object, timeout: float | None = None) -> T:
        """Run a blocking function on a worker thread once a slot is free.

        ``timeout`` bounds the wait for a slot, not the run itself; it defaults
        to the configured queue timeout.

        Raises:
            TimeoutError: If no slot frees up in time.
        """
        await self._acquire_slot(self._timeout if timeout is None else timeout)
        try:
            with self._counted("running"):
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()

    @property
    def active_count(self) -> int:
        """Number of analyses currently running."""
        with self._counter_lock:
            return self._counts["running"]

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for a slot."""
        with self._counter_lock:
            return self._counts["waiting"]

    def shutdown(self) -> None:
        """Wait for running work to finish and stop the worker threads."""
        self._executor.shutdown(wait=True)
