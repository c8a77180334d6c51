"""
Admission control for outbound model calls.

A single local inference server can usually serve one request at a time, so
every completion call in the colony passes through one shared controller.
Waiters are admitted strictly in arrival order.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque

from colony.agents.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    FIFO counting semaphore.

    ``release()`` hands the slot straight to the oldest waiter, so a caller
    arriving later can never overtake one already waiting.
    """

    def __init__(self, size: int = 1):
        if size < 1:
            raise ConfigurationError(
                f"Admission size must be at least 1, got {size}",
                config_field="max_concurrent_calls",
                config_value=size,
            )
        self.size = size
        self._free = size
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def in_use(self) -> int:
        return self.size - self._free

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait for a free slot."""
        if self._free > 0 and not self._waiters:
            self._free -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Waiting for admission ({len(self._waiters)} queued)")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a slot, handing it to the oldest live waiter if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._free >= self.size:
            raise RuntimeError("AdmissionController released more times than acquired")
        self._free += 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
