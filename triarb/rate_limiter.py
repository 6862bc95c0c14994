"""
Shared rate limiter for RPC and aggregator requests.
"""
import asyncio
import logging
import time

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 250
BACKOFF_MAX_MS = 60_000
BACKOFF_MAX_EXPONENT = 10


class RateLimiter:
    """
    Minimum-interval rate limiter with exponential rate-limit backoff.

    Every outbound request calls ``acquire()``, which enforces the minimum
    spacing between requests and waits out any active backoff window. When
    the upstream answers with a rate-limit error the caller reports it via
    ``on_rate_limited()``; a successful response resets the streak through
    ``on_success()``.

    One instance is shared by all concurrent batches; the lock makes it the
    single sequencing point.
    """

    def __init__(self, min_interval_ms: float = 50.0):
        """
        Initialize rate limiter.

        Args:
            min_interval_ms: Minimum spacing between requests in milliseconds (default: 50)
        """
        self.min_interval = max(0.0, min_interval_ms) / 1000.0
        self.consecutive_rate_limit_hits = 0
        self._last_request_time = 0.0
        self._backoff_until = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def per_second(cls, requests_per_second: float) -> "RateLimiter":
        """Build a limiter from a requests-per-second budget."""
        if requests_per_second <= 0:
            return cls(min_interval_ms=0.0)
        return cls(min_interval_ms=1000.0 / requests_per_second)

    def backoff_delay_ms(self) -> int:
        """min(60000, 250 * 2^min(10, hits)) for the current hit streak."""
        exponent = min(BACKOFF_MAX_EXPONENT, self.consecutive_rate_limit_hits)
        return min(BACKOFF_MAX_MS, BACKOFF_BASE_MS * (2 ** exponent))

    def on_rate_limited(self) -> int:
        """
        Record a rate-limit response and open a backoff window.

        Returns:
            The backoff delay in milliseconds
        """
        self.consecutive_rate_limit_hits += 1
        delay_ms = self.backoff_delay_ms()
        self._backoff_until = max(self._backoff_until, time.monotonic() + delay_ms / 1000.0)
        logger.warning(
            f"Rate limited ({self.consecutive_rate_limit_hits} in a row), backing off {delay_ms}ms"
        )
        return delay_ms

    def on_success(self):
        """Reset the rate-limit streak after any successful request."""
        if self.consecutive_rate_limit_hits:
            logger.debug(f"Rate limit streak cleared after {self.consecutive_rate_limit_hits} hits")
        self.consecutive_rate_limit_hits = 0

    async def acquire(self):
        """
        Wait until a request can be made.

        Honors the backoff window first, then the minimum interval.
        """
        async with self._lock:
            now = time.monotonic()
            if now < self._backoff_until:
                await asyncio.sleep(self._backoff_until - now)

            time_since_last = time.monotonic() - self._last_request_time
            if time_since_last < self.min_interval:
                await asyncio.sleep(self.min_interval - time_since_last)

            self._last_request_time = time.monotonic()
