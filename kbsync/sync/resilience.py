"""
Resilience utilities: retry with exponential backoff for async operations.

The engine never decides on its own what is transient; every collaborator
binding supplies an ``is_transient`` predicate, with ``is_rate_limit_error``
as the common default.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

RATE_LIMIT_CODES = ('rate_limited', 'ratelimited', 'rate_limit_exceeded')


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: bool = False

    def compute_backoff(self, attempt_index_zero_based: int) -> float:
        delay = min(self.initial_delay_seconds * (2 ** attempt_index_zero_based), self.max_delay_seconds)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # 0.5x - 1.5x jitter window
        return delay

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_retries=config.max_retries,
            initial_delay_seconds=config.initial_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            jitter=config.jitter,
        )


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for HTTP 429, a rate-limit error code, or a rate-limit message."""
    status = getattr(exc, 'status', None) or getattr(exc, 'status_code', None)
    if status == 429:
        return True
    code = getattr(exc, 'code', None)
    if isinstance(code, str) and code.lower() in RATE_LIMIT_CODES:
        return True
    return 'rate limit' in str(exc).lower()


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool] = is_rate_limit_error,
    operation_name: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Await ``fn()``, retrying transient failures with exponential backoff.

    - Non-transient failures are re-raised immediately.
    - At most ``policy.max_retries`` retries follow the first attempt; the
      last failure is re-raised once they are exhausted.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_retries or not is_transient(exc):
                raise
            delay = policy.compute_backoff(attempt)
            logger.warning(
                f"{operation_name} failed with a transient error, retry {attempt + 1}/{policy.max_retries} in {delay:.2f}s: {exc}",
                extra={'details': {'operation': operation_name, 'attempt': attempt + 1, 'delay_seconds': delay}},
            )
            await sleep(delay)
            attempt += 1
