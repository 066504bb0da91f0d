"""
Backoff policy and async retry decorator.

RetryConfig answers two questions for a failed attempt: is another attempt
worth it, and how long to wait first. PagedFetcher and BatchingEmitter run
their own loops with it because their status handling differs per error;
TokenProvider wraps token acquisition in with_retry_async.

Permanent errors are never retried. Transient, auth and unclassified
failures are retried until max_attempts is used up.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps

from core.errors.exceptions import ThrottledError, wrap_exception

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Attempt budget and equal-jitter exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """
        Seconds to wait after the 0-indexed attempt failed.

        A ThrottledError carrying retry_after is honoured, capped at
        max_delay. Otherwise half of the exponential delay is fixed and half
        random, so concurrent workers do not retry in lockstep.
        """
        if isinstance(error, ThrottledError) and error.retry_after:
            return min(error.retry_after, self.max_delay)

        ceiling = self.base_delay * (self.exponential_base**attempt)
        return min(ceiling / 2 + random.uniform(0, ceiling / 2), self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts - 1:
            return False
        return wrap_exception(error).is_retryable


AUTH_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


def with_retry_async(
    config: RetryConfig = AUTH_RETRY,
    sleep: Callable[[float], Awaitable[None]] | None = None,
):
    """
    Retry an async callable under a RetryConfig.

    The final failure is raised as a PipelineError. A foreign exception is
    wrapped by category and chained to the original.

    Args:
        config: Attempt budget and backoff
        sleep: Awaitable sleep between attempts (defaults to asyncio.sleep)
    """

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            do_sleep = sleep or asyncio.sleep
            attempt = 0

            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    error = wrap_exception(e)
                    log_extra = {
                        "operation": func.__name__,
                        "attempt": attempt + 1,
                        "max_attempts": config.max_attempts,
                        "error_category": error.category.value,
                        "error_message": str(e)[:200],
                    }

                    if not config.should_retry(error, attempt):
                        logger.warning("Giving up on %s", func.__name__, extra=log_extra)
                        if error is e:
                            raise
                        raise error from e

                    delay = config.get_delay(attempt, error)
                    logger.warning(
                        "Retryable error for %s, will retry",
                        func.__name__,
                        extra={**log_extra, "delay_seconds": round(delay, 2)},
                    )
                    await do_sleep(delay)
                    attempt += 1
                    continue

                if attempt:
                    logger.info(
                        "Retry succeeded for %s",
                        func.__name__,
                        extra={"operation": func.__name__, "attempt": attempt + 1},
                    )
                return result

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "AUTH_RETRY",
]
