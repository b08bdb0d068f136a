import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque


class RateLimiter:
    """Admits at most ``rate`` requests within any trailing ``period`` seconds.

    Callers are served strictly in arrival order: the lock is held while a
    caller waits for the window to free up, and asyncio locks wake waiters
    first-in first-out.
    """

    def __init__(
        self,
        rate: int = 8,
        period: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate < 1:
            raise ValueError("rate must be at least 1")
        self.rate = rate
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._admitted: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def admit(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._admitted and self._admitted[0] <= now - self.period:
                    self._admitted.popleft()
                if len(self._admitted) < self.rate:
                    self._admitted.append(now)
                    return
                await self._sleep(self._admitted[0] + self.period - now)
