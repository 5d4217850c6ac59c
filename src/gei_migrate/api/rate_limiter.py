"""Rate limiting for GitHub API calls."""

import asyncio
import time


class RateLimiter:
    """Token bucket limiter that also honours GitHub's Retry-After backoff.

    ``acquire()`` spends one token per request. After a rate-limit response
    ``backoff(seconds)`` holds every caller until the window has passed.
    """

    def __init__(self, requests_per_second: float = 10.0):
        """Initialize rate limiter.

        Args:
            requests_per_second: Sustained requests per second, also the burst size
        """
        self.requests_per_second = requests_per_second
        self.tokens = requests_per_second
        self.last_update = time.monotonic()
        self.blocked_until = 0.0
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> float:
        elapsed = now - self.last_update
        return min(
            self.requests_per_second,
            self.tokens + elapsed * self.requests_per_second,
        )

    def _wait_time(self, now: float) -> float:
        blocked = max(0.0, self.blocked_until - now)
        tokens = self._refill(now)
        starved = 0.0 if tokens >= 1 else (1 - tokens) / self.requests_per_second
        return max(blocked, starved)

    async def acquire(self) -> None:
        """Wait until a request may be made and spend a token on it."""
        async with self._lock:
            while True:
                wait = self.time_until_next_request()
                if wait <= 0:
                    break
                await asyncio.sleep(wait)

            now = time.monotonic()
            self.tokens = self._refill(now) - 1
            self.last_update = now

    def backoff(self, seconds: float) -> None:
        """Hold all requests for ``seconds`` (from a Retry-After header)."""
        self.blocked_until = max(self.blocked_until, time.monotonic() + seconds)
        self.tokens = 0
        self.last_update = time.monotonic()

    def time_until_next_request(self) -> float:
        """Seconds until the next request is allowed, 0 if it is allowed now."""
        return self._wait_time(time.monotonic())
