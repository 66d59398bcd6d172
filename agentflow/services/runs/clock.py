"""Clock and cancellation primitives for the polling loop.

The run engine never calls ``time`` or ``asyncio.sleep`` directly; it goes
through a ``Clock`` so tests can drive timeouts without waiting.
"""

import asyncio
import time
from typing import Awaitable, Optional, Protocol, TypeVar

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float:
        """Monotonic time in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class CancellationToken:
    """Cooperative cancellation flag checked by the polling loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def with_timeout(clock: Clock, awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Await ``awaitable`` but give up after ``timeout`` seconds of ``clock`` time.

    Works like ``asyncio.wait_for`` except the deadline is measured by the
    injected clock. On timeout the work is cancelled and awaited before
    ``asyncio.TimeoutError`` is raised.
    """
    if timeout is None:
        return await awaitable
    work = asyncio.ensure_future(awaitable)
    if timeout <= 0:
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise asyncio.TimeoutError()

    timer = asyncio.ensure_future(clock.sleep(timeout))
    try:
        await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        timer.cancel()
        raise

    if work.done():
        timer.cancel()
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise asyncio.TimeoutError()
