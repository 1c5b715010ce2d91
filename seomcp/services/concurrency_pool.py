"""Bounded semaphore for limiting concurrent worker spawns.

Each spawned worker is a full native process; the pool keeps a burst of proxy
requests from starting more of them than the host can hold in memory.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Tuple


Release = Callable[[], None]


class PoolFullError(Exception):
    """Raised when no slot frees up within the acquisition timeout."""


class ConcurrencyPool:
    def __init__(self, max_active: int) -> None:
        if int(max_active) < 1:
            raise ValueError("max_active must be >= 1")
        self._max = int(max_active)
        self._active = 0
        self._queue: Deque[Tuple[asyncio.Future, asyncio.TimerHandle]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def max(self) -> int:
        return self._max

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def acquire(self, timeout: float = 10.0) -> Release:
        """Acquire a slot from the pool.

        Returns a release function that MUST be called when done (calling it
        more than once is harmless). Raises PoolFullError if `timeout` seconds
        elapse while waiting in the queue.
        """
        if self._active < self._max:
            self._active += 1
            return self._make_release()

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future = loop.create_future()
        timer = loop.call_later(max(0.0, float(timeout)), self._expire, waiter)
        entry = (waiter, timer)
        self._queue.append(entry)

        try:
            return await waiter
        except asyncio.CancelledError:
            timer.cancel()
            self._forget(entry)
            # Granted and cancelled in the same loop iteration: hand the slot back.
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                waiter.result()()
            raise

    def _make_release(self) -> Release:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._active -= 1
            self._drain_queue()

        return release

    def _drain_queue(self) -> None:
        while self._queue and self._active < self._max:
            waiter, timer = self._queue.popleft()
            timer.cancel()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(self._make_release())

    def _expire(self, waiter: asyncio.Future) -> None:
        if waiter.done():
            return
        for entry in list(self._queue):
            if entry[0] is waiter:
                self._forget(entry)
                break
        waiter.set_exception(PoolFullError("Concurrency pool full, try again later"))

    def _forget(self, entry: Tuple[asyncio.Future, asyncio.TimerHandle]) -> None:
        try:
            self._queue.remove(entry)
        except ValueError:
            pass
