"""StateSet 网关核心：为远程业务 API 提供重试、限流、批处理与自适应缓存。

stateset-gateway: resilience and flow control for a remote business API.

Wraps each call in caching, priority-queued rate limiting, classified
retries and timeouts, and groups batchable reads into bulk calls.
"""
from __future__ import annotations

from stateset_gateway.batch import BatchConfig, BatchProcessor
from stateset_gateway.cache import AdaptiveCache, CacheConfig, fingerprint
from stateset_gateway.config import GatewaySettings
from stateset_gateway.context import GatewayContext
from stateset_gateway.errors import (
    ErrorKind,
    GatewayError,
    QueueClearedError,
    RemoteError,
    RetryExhaustedError,
    ShutdownError,
    TransportError,
    classify_error,
)
from stateset_gateway.resilience import (
    Priority,
    RateLimiter,
    RateLimiterConfig,
    RetryConfig,
    RetryResult,
    Strategy,
    with_retry,
)

__version__ = "0.1.0"

__all__ = [
    # Cache
    "AdaptiveCache",
    # Batch
    "BatchConfig",
    "BatchProcessor",
    "CacheConfig",
    # Errors
    "ErrorKind",
    # Context
    "GatewayContext",
    "GatewayError",
    # Config
    "GatewaySettings",
    # Resilience
    "Priority",
    "QueueClearedError",
    "RateLimiter",
    "RateLimiterConfig",
    "RemoteError",
    "RetryConfig",
    "RetryExhaustedError",
    "RetryResult",
    "ShutdownError",
    "Strategy",
    "TransportError",
    "classify_error",
    "fingerprint",
    "with_retry",
    # Version
    "__version__",
]
