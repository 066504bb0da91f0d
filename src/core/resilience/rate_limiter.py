"""
Token bucket rate limiter shared by concurrent workers.

One limiter exists per API audience (and one for the sink). Every worker
calling that API draws from it, which bounds the aggregate request rate
rather than the rate of any single worker.

The bucket holds up to burst_capacity tokens and refills at calls_per_second.
A call costs one token; when the bucket is short the caller sleeps for the
deficit while holding the lock, so later callers queue behind it.

Usage:
    limiter = RateLimiter(RateLimiterConfig(calls_per_second=10, name="arm"))
    await limiter.acquire()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Configuration for one shared rate budget."""

    calls_per_second: float = 10.0

    # Tokens that may accumulate while idle. None means one second's worth,
    # never less than a single call.
    burst_capacity: Optional[float] = None

    name: str = "rate_limiter"


class RateLimiter:
    """
    Async token bucket.

    Bucket state is only touched while holding an asyncio lock, so concurrent
    callers are served one at a time from a single budget.
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        calls_per_second: Optional[float] = None,
    ):
        if config is None:
            config = RateLimiterConfig(calls_per_second=calls_per_second or 10.0)
        elif calls_per_second is not None:
            config = RateLimiterConfig(
                calls_per_second=calls_per_second,
                burst_capacity=config.burst_capacity,
                name=config.name,
            )

        if config.calls_per_second <= 0:
            raise ValueError(
                f"calls_per_second must be positive, got {config.calls_per_second}"
            )

        self.config = config
        self._rate = config.calls_per_second
        self._burst_capacity = max(1.0, config.burst_capacity or config.calls_per_second)
        self._tokens = self._burst_capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

        logger.debug(
            "Rate limiter initialized",
            extra={
                "rate_limiter": config.name,
                "calls_per_second": self._rate,
                "burst_capacity": self._burst_capacity,
            },
        )

    @property
    def burst_capacity(self) -> float:
        return self._burst_capacity

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(
            self._burst_capacity, self._tokens + (now - self._last_update) * self._rate
        )
        self._last_update = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """
        Take tokens from the bucket, sleeping until they are available.

        Raises:
            ValueError: If more tokens are requested than the bucket can hold
        """
        if tokens > self._burst_capacity:
            raise ValueError(
                f"Requested tokens ({tokens}) exceeds burst capacity ({self._burst_capacity})"
            )

        async with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            wait_time = (tokens - self._tokens) / self._rate
            logger.debug(
                "Rate limit reached, waiting",
                extra={
                    "rate_limiter": self.config.name,
                    "wait_seconds": round(wait_time, 3),
                    "tokens_requested": tokens,
                },
            )
            await asyncio.sleep(wait_time)
            self._tokens = 0.0
            self._last_update = time.monotonic()


__all__ = [
    "RateLimiter",
    "RateLimiterConfig",
]
