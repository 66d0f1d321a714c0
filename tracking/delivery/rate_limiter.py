"""
Sliding-window quota limiter for the analytics store.

The store enforces a per-minute request quota shared by every worker, so a
single limiter instance is shared by the whole process.
"""

from collections import deque
from typing import Awaitable, Callable, Deque, Optional
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class QuotaLimiter:
    """
    Allow at most ``capacity`` acquisitions per ``window`` seconds.

    ``pause(seconds)`` blocks all acquisitions until the pause expires,
    used when the store answers 429 with a Retry-After.
    """

    def __init__(
        self,
        capacity: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._grants: Deque[float] = deque()
        self._paused_until: float = 0.0
        self._lock = asyncio.Lock()

    def _evict(self, now: float):
        while self._grants and now - self._grants[0] >= self.window:
            self._grants.popleft()

    def remaining(self) -> int:
        """Free slots in the current window; zero while paused"""
        now = self._clock()
        if now < self._paused_until:
            return 0
        self._evict(now)
        return self.capacity - len(self._grants)

    def pause(self, seconds: float):
        until = self._clock() + max(0.0, seconds)
        if until > self._paused_until:
            self._paused_until = until
            logger.warning(f"Analytics store quota paused for {seconds:.1f}s")

    def _wait_time(self, now: float) -> Optional[float]:
        if now < self._paused_until:
            return self._paused_until - now
        self._evict(now)
        if len(self._grants) < self.capacity:
            return None
        return self.window - (now - self._grants[0])

    async def acquire(self):
        """Take one slot, sleeping until one is free"""
        async with self._lock:
            while True:
                now = self._clock()
                wait = self._wait_time(now)
                if wait is None:
                    self._grants.append(now)
                    return
                logger.debug(f"Quota exhausted, waiting {wait:.2f}s")
                await self._sleep(wait)
