"""
Cache module for stateset-gateway.

Provides an adaptive in-memory cache and fingerprint key generation.
"""

from stateset_gateway.cache.adaptive import (
    AccessPattern,
    AdaptiveCache,
    CacheConfig,
    CacheEntry,
    CacheStats,
    WarmingKey,
)
from stateset_gateway.cache.key import CacheKeyGenerator, fingerprint

__all__ = [
    "AccessPattern",
    "AdaptiveCache",
    "CacheConfig",
    "CacheEntry",
    "CacheKeyGenerator",
    "CacheStats",
    "WarmingKey",
    "fingerprint",
]
