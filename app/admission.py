"""Bounded concurrency with a bounded FIFO wait queue.

Every ffmpeg run holds an :class:`AdmissionTicket`.  ``reserve`` never blocks:
it either grants a slot, queues the ticket, or raises :class:`QueueFull`.
Releasing a granted ticket hands the slot directly to the oldest waiter, so
queued work starts in arrival order.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from .errors import QueueFull
from .log import logger

T = TypeVar("T")


class AdmissionTicket:
    __slots__ = ("_controller", "_future", "_granted", "_released")

    def __init__(self, controller: "AdmissionController", future: Optional["asyncio.Future[None]"]) -> None:
        self._controller = controller
        self._future = future
        self._granted = future is None
        self._released = False

    @property
    def granted(self) -> bool:
        return self._granted

    @property
    def released(self) -> bool:
        return self._released

    def _grant(self) -> bool:
        if self._future is None or self._future.done():
            return False
        self._future.set_result(None)
        self._granted = True
        return True

    async def wait(self) -> None:
        if self._released:
            raise RuntimeError("ticket already released")
        if self._future is None:
            return
        try:
            await self._future
        except asyncio.CancelledError:
            self.release()
            raise

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._granted:
            self._controller._release_slot()
        else:
            if self._future is not None and not self._future.done():
                self._future.cancel()
            self._controller._withdraw(self)

    async def __aenter__(self) -> "AdmissionTicket":
        await self.wait()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class AdmissionController:
    def __init__(self, max_concurrency: int = 1, max_queue: int = 4, *, retry_after: int = 30) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if max_queue < 0:
            raise ValueError("max_queue must be >= 0")
        self.max_concurrency = max_concurrency
        self.max_queue = max_queue
        self.retry_after = retry_after
        self._active = 0
        self._waiters: Deque[AdmissionTicket] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def reserve(self) -> AdmissionTicket:
        if self._active < self.max_concurrency and not self._waiters:
            self._active += 1
            return AdmissionTicket(self, None)
        if len(self._waiters) >= self.max_queue:
            logger.warning(
                "Admission queue full (active=%d, queued=%d)", self._active, len(self._waiters)
            )
            raise QueueFull(retry_after=self.retry_after)
        ticket = AdmissionTicket(self, asyncio.get_running_loop().create_future())
        self._waiters.append(ticket)
        return ticket

    async def submit(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self.reserve():
            return await fn(*args, **kwargs)

    def _release_slot(self) -> None:
        while self._waiters:
            ticket = self._waiters.popleft()
            if ticket._grant():
                # Slot passes straight to the waiter; active count is unchanged
                return
        self._active -= 1

    def _withdraw(self, ticket: AdmissionTicket) -> None:
        try:
            self._waiters.remove(ticket)
        except ValueError:
            pass

    def snapshot(self) -> Dict[str, int]:
        return {
            "active": self._active,
            "queued": len(self._waiters),
            "max_concurrency": self.max_concurrency,
            "max_queue": self.max_queue,
        }
