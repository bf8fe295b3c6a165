"""
Cache key generation utilities.

Fingerprints identify an operation call by its name and a canonical JSON
rendering of its arguments.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

DEFAULT_PREFIX = "gw"
DEFAULT_EXCLUDED = ("request_id",)
DIGEST_LENGTH = 24


def _canonical(arguments: Mapping[str, Any], excluded: set[str]) -> str:
    filtered = {k: v for k, v in arguments.items() if k not in excluded}
    return json.dumps(filtered, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)


def fingerprint(
    operation: str,
    arguments: Mapping[str, Any] | None = None,
    *,
    prefix: str = DEFAULT_PREFIX,
    excluded: Iterable[str] = DEFAULT_EXCLUDED,
) -> str:
    """Build a stable cache key for an operation call.

    Argument order does not matter; excluded arguments do not affect the key.

    Args:
        operation: Operation name
        arguments: Call arguments
        prefix: Key prefix
        excluded: Argument names left out of the digest

    Returns:
        Key of the form ``"{prefix}:{operation}:{digest}"``

    Example:
        >>> fingerprint("list_orders", {"status": "open", "limit": 10})
        'gw:list_orders:...'
    """
    content = _canonical(arguments or {}, set(excluded))
    digest = hashlib.sha256(content.encode()).hexdigest()[:DIGEST_LENGTH]
    return f"{prefix}:{operation}:{digest}"


class CacheKeyGenerator:
    """Generates fingerprints with a fixed prefix and exclusion list.

    Example:
        >>> generator = CacheKeyGenerator(prefix="orders", excluded=["request_id", "trace"])
        >>> generator.generate("get_order", {"id": "ord_1"})
        'orders:get_order:...'
    """

    def __init__(
        self,
        prefix: str = DEFAULT_PREFIX,
        excluded: Iterable[str] | None = None,
    ) -> None:
        """Initialize key generator.

        Args:
            prefix: Key prefix
            excluded: Argument names to leave out of keys
        """
        self._prefix = prefix
        self._excluded = set(DEFAULT_EXCLUDED if excluded is None else excluded)

    @property
    def prefix(self) -> str:
        return self._prefix

    def generate(self, operation: str, arguments: Mapping[str, Any] | None = None) -> str:
        """Generate a fingerprint for an operation call."""
        return fingerprint(operation, arguments, prefix=self._prefix, excluded=self._excluded)

    def pattern_for(self, operation: str) -> str:
        """Get a regex matching every key of one operation.

        Suitable for :meth:`AdaptiveCache.invalidate_by_pattern`.
        """
        return f"^{re.escape(self._prefix)}:{re.escape(operation)}:"
