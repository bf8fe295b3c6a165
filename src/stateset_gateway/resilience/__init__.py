"""
Resilience module for stateset-gateway.

Provides retry with backoff, priority-queued rate limiting and timeouts.
"""

from stateset_gateway.resilience.rate_limiter import (
    NO_TIMEOUT,
    Priority,
    RateLimiter,
    RateLimiterConfig,
    RateLimiterMetrics,
)
from stateset_gateway.resilience.retry import (
    RetryConfig,
    RetryPolicy,
    RetryResult,
    create_retryable,
    with_retry,
)
from stateset_gateway.resilience.strategies import (
    AdaptiveBucket,
    SlidingWindow,
    Strategy,
    StrategyState,
    TokenBucket,
    build_strategy,
)
from stateset_gateway.resilience.timeout import run_with_timeout

__all__ = [
    # Strategies
    "AdaptiveBucket",
    # Rate limiter
    "NO_TIMEOUT",
    "Priority",
    "RateLimiter",
    "RateLimiterConfig",
    "RateLimiterMetrics",
    # Retry
    "RetryConfig",
    "RetryPolicy",
    "RetryResult",
    "SlidingWindow",
    "Strategy",
    "StrategyState",
    "TokenBucket",
    "build_strategy",
    "create_retryable",
    # Timeout
    "run_with_timeout",
    "with_retry",
]
