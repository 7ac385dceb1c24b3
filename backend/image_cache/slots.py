"""
Load Slots
窗口加载并发槽

Counting limiter for window loads whose capacity can change while loads are
running. Unlike ``asyncio.Semaphore`` the limiter is never replaced, so a
budget reload cannot leave the old and the new limit active side by side.

- Growing wakes queued waiters immediately
- Shrinking lets running loads finish; new loads wait until active < capacity
- Waiters are served FIFO
"""

import asyncio
import logging
from collections import deque
from typing import Deque

logger = logging.getLogger(__name__)


class LoadSlots:
    """
    Usage:
        slots = LoadSlots(5)
        async with slots:
            await load()
        slots.resize(7)
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def resize(self, capacity: int) -> None:
        """Change the limit in place; takes effect for the next acquisition."""
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if capacity == self._capacity:
            return
        logger.debug(f"[LoadSlots] Capacity {self._capacity} -> {capacity}")
        self._capacity = capacity
        self._wake()

    async def acquire(self) -> None:
        if not self._waiters and self._active < self._capacity:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        # Cancelled waiters ahead of this one may be the only thing in the way
        self._wake()
        try:
            await waiter
        except asyncio.CancelledError:
            # The slot may have been handed over just before the cancellation
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._capacity:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    async def __aenter__(self) -> "LoadSlots":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
