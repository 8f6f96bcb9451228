from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

log = logging.getLogger("clock")

MINUTE_MS = 60_000


def floor_minute_ms(ts_ms: int) -> int:
    return int(ts_ms) // MINUTE_MS * MINUTE_MS


def next_minute_ms(ts_ms: int) -> int:
    """Start of the next whole minute strictly after ``ts_ms``."""
    return floor_minute_ms(ts_ms) + MINUTE_MS


def fmt_ms(ts_ms: Optional[int]) -> str:
    if ts_ms is None:
        return "-"
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class Clock:
    """Wall clock plus the asyncio primitives the engine waits on.

    Everything time-dependent goes through an instance of this class so that
    tests can substitute a manual clock.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, float(seconds)))

    async def sleep_until(self, ts_ms: int) -> None:
        wait_ms = int(ts_ms) - self.now_ms()
        if wait_ms > 0:
            await self.sleep(wait_ms / 1000.0)

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, float(delay_s)), callback)

    def spawn(self, coro: Awaitable, *, name: str = "") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return task

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("task_failed name=%s err=%r", name or task, exc)

    async def drain(self) -> None:
        """Wait for every spawned task that is still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
