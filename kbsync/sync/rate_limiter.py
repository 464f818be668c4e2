"""
Sliding-window rate limiter for outbound requests.

Every call through ``RateLimiter.execute`` records its start time before the
task runs, so a task that raises still occupies its slot. Waiters queue on an
``asyncio.Lock``, which hands over in FIFO order.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, TypeVar

from ..config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RateLimiter:
    """
    Allow at most ``max_requests`` task starts in any trailing ``window_seconds``.

    Args:
        max_requests: Starts allowed within one window
        window_seconds: Length of the sliding window
        safety_buffer_seconds: Added to every wait so the oldest start has
            definitely left the window when the waiter wakes up
        name: Used in debug logs
        clock: Monotonic clock, injectable for tests
        sleep: Async sleep, injectable for tests
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        safety_buffer_seconds: float = 0.01,
        name: str = "rate-limiter",
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.safety_buffer_seconds = safety_buffer_seconds
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._starts: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config, name: str = "rate-limiter") -> 'RateLimiter':
        return cls(
            max_requests=config.max_requests,
            window_seconds=config.window_seconds,
            safety_buffer_seconds=config.safety_buffer_seconds,
            name=name,
        )

    def _evict(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._starts and self._starts[0] <= window_start:
            self._starts.popleft()

    async def acquire(self) -> None:
        """Wait for a free slot and claim it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._starts) < self.max_requests:
                    self._starts.append(now)
                    return
                wait = self._starts[0] + self.window_seconds - now + self.safety_buffer_seconds
                logger.debug(f"{self.name}: {len(self._starts)} requests in window, waiting {wait:.3f}s")
                await self._sleep(max(wait, 0.0))

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once a slot is available."""
        await self.acquire()
        return await task()

    @property
    def in_window(self) -> int:
        """Number of starts currently inside the window."""
        self._evict(self._clock())
        return len(self._starts)
