"""Schedule-and-cancel timer abstraction.

The mutation tracker's debounce windows and the sync engine's periodic
interval are both expressed against a ``Scheduler`` rather than a concrete
runtime timer, so the same logic runs under asyncio in production and under
a simulated clock in tests.

- ``AsyncioScheduler``: backed by ``loop.call_later``.
- ``ManualScheduler``: virtual clock advanced explicitly by the caller.

Callbacks may be plain functions or return an awaitable; awaitables are
run as tasks (asyncio) or awaited in order (manual).
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TimerHandle:
    """Cancellable handle for one scheduled callback."""

    def __init__(self, when: float, callback: Callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self._loop_handle: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        """Prevent the callback from running. Idempotent."""
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()


class Scheduler(Protocol):
    """Protocol every scheduler must satisfy."""

    def now(self) -> float:
        """Current scheduler time in seconds."""
        ...  # pragma: no cover

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        """Run *callback* after *delay* seconds; return a cancellable handle."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# asyncio-backed scheduler
# ---------------------------------------------------------------------------


class AsyncioScheduler:
    """Scheduler running callbacks on the current asyncio event loop.

    Coroutines returned by callbacks are wrapped in tasks; ``drain()``
    waits for the ones still in flight.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        loop = self._get_loop()
        handle = TimerHandle(self.now() + delay, callback)
        handle._loop_handle = loop.call_later(
            delay, self._fire, handle
        )
        return handle

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        result = handle.callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Scheduled callback failed: %s", task.exception()
            )

    async def drain(self) -> None:
        """Wait for callback tasks that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Simulated clock
# ---------------------------------------------------------------------------


class ManualScheduler:
    """Scheduler with a virtual clock, for deterministic tests.

    Nothing runs until ``advance()`` moves the clock forward; due callbacks
    then run in time order (ties in scheduling order).
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    @property
    def pending(self) -> int:
        """Number of scheduled, not-cancelled callbacks."""
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every callback that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self._now = when
            if handle.cancelled:
                continue
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target
