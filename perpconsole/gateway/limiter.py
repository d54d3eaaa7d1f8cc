"""
FIFO concurrency limiter for outbound calls.

A counting semaphore whose waiters are served strictly in arrival order.
A freed slot is handed directly to the oldest waiter, so a caller arriving
later can never overtake one that is already queued.

Usage:
    limiter = FifoLimiter(limit=3)

    async with limiter.slot():
        await remote.get_positions(address)
"""
import asyncio
from collections import deque
from typing import Deque, Optional

from perpconsole.exceptions import ShutdownError
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)


class InFlightSlot:
    """One acquired unit of the concurrency budget. Released exactly once."""

    def __init__(self, limiter: "FifoLimiter", ticket: int):
        self._limiter = limiter
        self.ticket = ticket
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._limiter._release()

    async def __aenter__(self) -> "InFlightSlot":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


class _SlotContext:
    """Async context manager that acquires on enter and releases on exit."""

    def __init__(self, limiter: "FifoLimiter"):
        self._limiter = limiter
        self._slot: Optional[InFlightSlot] = None

    async def __aenter__(self) -> InFlightSlot:
        self._slot = await self._limiter.acquire()
        return self._slot

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._slot is not None:
            self._slot.release()
        return False


class FifoLimiter:
    """
    Counting semaphore with a FIFO wait list.

    Invariant: in_flight <= limit at every instant.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"concurrency limit must be >= 1, got {limit}")
        self.limit = limit
        self._in_flight = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._closed = False
        self._tickets = 0

        # Metrics
        self.peak_in_flight = 0
        self.total_acquired = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def closed(self) -> bool:
        return self._closed

    def slot(self) -> _SlotContext:
        """Scoped acquisition: `async with limiter.slot(): ...`."""
        return _SlotContext(self)

    async def acquire(self) -> InFlightSlot:
        """
        Acquire one slot, waiting in arrival order if the budget is exhausted.

        Raises:
            ShutdownError: If the limiter is closed before a slot is granted
        """
        if self._closed:
            raise ShutdownError("gateway is shut down")

        if self._in_flight < self.limit and not self._waiters:
            self._in_flight += 1
            return self._grant()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Slot was handed over just as we were cancelled: pass it on
                self._release()
            else:
                self._discard(waiter)
            raise
        # Hand-off keeps _in_flight unchanged: the releaser's slot became ours
        return self._grant()

    def close(self) -> None:
        """Refuse new acquisitions and fail every queued waiter with ShutdownError."""
        if self._closed:
            return
        self._closed = True
        pending = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(ShutdownError("gateway shut down while waiting for a slot"))
                pending += 1
        logger.info("LIMITER_CLOSED", in_flight=self._in_flight, failed_waiters=pending)

    def _grant(self) -> InFlightSlot:
        self._tickets += 1
        self.total_acquired += 1
        if self._in_flight > self.peak_in_flight:
            self.peak_in_flight = self._in_flight
        return InFlightSlot(self, self._tickets)

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1

    def _discard(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
