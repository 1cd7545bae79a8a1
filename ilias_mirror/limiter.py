import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional


class RateGate:
    """
    A token bucket shared by everything that talks to the server.

    One token is generated every period/rate seconds, up to "burst" tokens.
    Each request consumes a token. Callers wait on an empty bucket and are
    served in the order they arrived.
    """

    def __init__(
            self,
            rate: float,
            period: float = 60.0,
            burst: int = 1,
            clock: Callable[[], float] = time.monotonic,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be greater than 0")
        if period <= 0:
            raise ValueError("period must be greater than 0")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self._interval = period / rate
        self._capacity = float(burst)
        self._tokens = float(burst)
        self._last_refill: Optional[float] = None
        self._clock = clock
        self._sleep = sleep

        # asyncio.Lock hands itself to waiters in FIFO order
        self._lock = asyncio.Lock()
        self._granted = 0

    @property
    def granted(self) -> int:
        """
        How many permits were handed out so far.
        """

        return self._granted

    def _refill(self) -> None:
        now = self._clock()
        if self._last_refill is not None:
            elapsed = now - self._last_refill
            self._tokens = min(self._capacity, self._tokens + elapsed / self._interval)
        self._last_refill = now

    async def acquire(self) -> None:
        """
        Wait until one more request may be sent.
        """

        async with self._lock:
            self._refill()
            while self._tokens < 1:
                await self._sleep((1 - self._tokens) * self._interval)
                self._refill()

            self._tokens -= 1
            self._granted += 1


@dataclass
class Slot:
    active: bool = False


class Limiter:
    """
    Bounds how much local work is in flight: "task_limit" crawl or download
    tasks at once, of which at most "download_limit" may be downloads.

    How fast requests leave the machine is up to the RateGate, not this.
    """

    def __init__(self, task_limit: int, download_limit: int):
        if task_limit <= 0:
            raise ValueError("task limit must be at least 1")
        if download_limit <= 0:
            raise ValueError("download limit must be at least 1")
        if download_limit > task_limit:
            raise ValueError("download limit can't be greater than task limit")

        self._slots = [Slot() for _ in range(task_limit)]
        self._downloads = download_limit

        self._condition = asyncio.Condition()

    def _acquire_slot(self) -> Optional[Slot]:
        for slot in self._slots:
            if not slot.active:
                slot.active = True
                return slot

        return None

    @asynccontextmanager
    async def limit_crawl(self) -> AsyncIterator[None]:
        slot: Slot
        async with self._condition:
            while True:
                if found_slot := self._acquire_slot():
                    slot = found_slot
                    break
                await self._condition.wait()

        try:
            yield
        finally:
            async with self._condition:
                slot.active = False
                self._condition.notify_all()

    @asynccontextmanager
    async def limit_download(self) -> AsyncIterator[None]:
        slot: Slot
        async with self._condition:
            while True:
                if self._downloads <= 0:
                    await self._condition.wait()
                    continue

                if found_slot := self._acquire_slot():
                    slot = found_slot
                    self._downloads -= 1
                    break

                await self._condition.wait()

        try:
            yield
        finally:
            async with self._condition:
                slot.active = False
                self._downloads += 1
                self._condition.notify_all()
