"""
Resilience patterns module.

Provides fault tolerance primitives for talking to rate-limited APIs.

Components:
    - RateLimiter: Token bucket rate limiting shared per API audience
    - RetryConfig: Exponential backoff configuration with equal jitter
    - @with_retry_async decorator: Retry with classification-aware decisions
"""

from .rate_limiter import (
    RateLimiter,
    RateLimiterConfig,
)
from .retry import (
    AUTH_RETRY,
    RetryConfig,
    with_retry_async,
)

__all__ = [
    # Rate Limiter
    "RateLimiter",
    "RateLimiterConfig",
    # Retry
    "RetryConfig",
    "with_retry_async",
    "AUTH_RETRY",
]
