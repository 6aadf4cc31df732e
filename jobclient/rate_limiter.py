"""Rate limiting for outbound calls.

Provides an async token-bucket limiter with a server-driven backoff
window, and a registry that shares one limiter per rate-limit key across
every concurrent caller.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from jobclient.result import Result

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter", "RateLimiterRegistry"]

SleepFn = Callable[[float], Awaitable[Any]]


class RateLimiter:
    """Token-bucket rate limiter with a shared backoff window.

    Limits the rate of calls to a number per second and, independently,
    holds every caller back while a server-requested backoff (a 429 with
    a retry-after hint) is in effect. State changes happen under a
    threading lock that is never held across an await.

    Example:
        limiter = RateLimiter(requests_per_second=10, burst_size=5)

        await limiter.acquire()  # waits until allowed
        await send(request)
    """

    def __init__(
        self,
        requests_per_second: Optional[float] = None,
        *,
        burst_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum sustained rate (None = unlimited)
            burst_size: Maximum burst capacity (defaults to 1)
            clock: Monotonic clock in seconds
            sleep: Awaitable sleep
        """
        if requests_per_second is not None and requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        self.rate = requests_per_second
        self.burst_size = burst_size or 1
        self.tokens = float(self.burst_size)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self._backoff_until = 0.0
        self._lock = threading.Lock()

    def set_backoff(self, seconds: float) -> None:
        """Hold all callers back for ``seconds`` from now."""
        until = self._clock() + max(0.0, seconds)
        with self._lock:
            # never shorten a window another caller already opened
            self._backoff_until = max(self._backoff_until, until)
        logger.info("Rate limit backoff set for %.1fs", seconds)

    def clear_backoff(self) -> None:
        with self._lock:
            self._backoff_until = 0.0

    def in_backoff(self) -> bool:
        with self._lock:
            return self._clock() < self._backoff_until

    def _backoff_remaining(self) -> float:
        return max(0.0, self._backoff_until - self._clock())

    def _refill_tokens(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self._clock()
        elapsed = now - self.last_update
        if self.rate is not None:
            self.tokens = min(self.burst_size, self.tokens + elapsed * self.rate)
        self.last_update = now

    def try_acquire(self) -> bool:
        """Take a token without waiting.

        Returns:
            True if a token was taken, False if the caller must wait
        """
        with self._lock:
            if self._backoff_remaining() > 0:
                return False
            if self.rate is None:
                return True
            self._refill_tokens()
            if self.tokens >= 1:
                self.tokens -= 1
                return True
            return False

    async def acquire(self) -> None:
        """Wait out any backoff window, then take a token."""
        while True:
            with self._lock:
                wait_time = self._backoff_remaining()
                if wait_time <= 0:
                    if self.rate is None:
                        return
                    self._refill_tokens()
                    if self.tokens >= 1:
                        self.tokens -= 1
                        return
                    wait_time = (1 - self.tokens) / self.rate

            await self._sleep(wait_time)


class RateLimiterRegistry:
    """Lazily creates one RateLimiter per key.

    Args:
        default_rate: Rate for keys without an explicit entry (None = unlimited)
        limits: Per-key ``{"requests_per_second": .., "burst_size": ..}``
    """

    def __init__(
        self,
        default_rate: Optional[float] = None,
        *,
        default_burst: Optional[int] = None,
        limits: Optional[Dict[str, Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.default_rate = default_rate
        self.default_burst = default_burst
        self.limits = dict(limits or {})
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limit = self.limits.get(key, {})
                limiter = RateLimiter(
                    limit.get("requests_per_second", self.default_rate),
                    burst_size=limit.get("burst_size", self.default_burst),
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._limiters[key] = limiter
            return limiter

    async def within_limit(
        self,
        key: str,
        fn: Callable[[], Awaitable[Result[Any]]],
    ) -> Result[Any]:
        """Gate ``fn`` by the budget named ``key``.

        A 429 answer carrying a retry-after hint opens a backoff window
        that every other caller sharing the key will respect.
        """
        limiter = self.get(key)
        await limiter.acquire()
        result = await fn()
        error = result.error
        if error is not None and error.status == 429 and error.retry_after:
            limiter.set_backoff(error.retry_after)
        return result
