"""Tests for the inference pool."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterator

import pytest

from faceprofile.config import Settings
from faceprofile.ml.inference import InferencePool


async def _wait_until(condition: Callable[[], bool]) -> None:
    for _ in range(200):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    pool = InferencePool(Settings(max_concurrent=1, queue_timeout=0.05))
    yield pool
    pool.shutdown()


class TestInferencePool:
    async def test_returns_result(self, pool: InferencePool) -> None:
        assert await pool.run(sum, [1, 2, 3]) == 6

    async def test_runs_off_the_event_loop(self, pool: InferencePool) -> None:
        name = await pool.run(lambda: threading.current_thread().name)
        assert name.startswith("face-analysis")

    async def test_exception_propagates(self, pool: InferencePool) -> None:
        def boom() -> None:
            raise ValueError("bad image")

        with pytest.raises(ValueError, match="bad image"):
            await pool.run(boom)
        assert pool.active_count == 0

    async def test_timeout_when_saturated(self, pool: InferencePool) -> None:
        release = threading.Event()
        busy = asyncio.create_task(pool.run(release.wait))
        await _wait_until(lambda: pool.active_count == 1)

        with pytest.raises(TimeoutError):
            await pool.run(sum, [1])

        release.set()
        assert await busy is True
        assert pool.queue_depth == 0

    async def test_counters_and_timeout_override(self, pool: InferencePool) -> None:
        release = threading.Event()
        busy = asyncio.create_task(pool.run(release.wait))
        await _wait_until(lambda: pool.active_count == 1)

        waiting = asyncio.create_task(pool.run(sum, [2, 3], timeout=5.0))
        await _wait_until(lambda: pool.queue_depth == 1)
        assert pool.active_count == 1

        release.set()
        assert await busy is True
        assert await waiting == 5
        assert pool.active_count == 0
        assert pool.queue_depth == 0
