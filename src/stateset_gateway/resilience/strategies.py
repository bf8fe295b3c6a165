"""
Admission strategies for the rate limiter.

Three variants share one small interface: ``try_acquire`` checks and
consumes capacity in a single synchronous step, so admissions scheduled on
the same event loop never race each other.
"""

from __future__ import annotations

import time
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from collections.abc import Callable

    from stateset_gateway.resilience.rate_limiter import RateLimiterConfig

MIN_ADAPTIVE_RATE = 1.0


class Strategy(str, Enum):
    """Rate limiting strategy."""

    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"
    ADAPTIVE = "adaptive"


class TokenBucket:
    """Token bucket with continuous refill.

    Starts full. Tokens accrue at ``refill_rate`` per second up to
    ``max_tokens``; each admission consumes one.
    """

    kind = Strategy.TOKEN_BUCKET

    def __init__(
        self,
        max_tokens: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the bucket.

        Args:
            max_tokens: Bucket capacity
            refill_rate: Tokens added per second (0 disables refill)
            clock: Monotonic time source in seconds
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if refill_rate < 0:
            raise ValueError("refill_rate must be >= 0")
        self.max_tokens = float(max_tokens)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = self.max_tokens
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        if self.refill_rate > 0 and elapsed > 0:
            self._tokens = min(self._tokens + elapsed * self.refill_rate, self.max_tokens)

    def try_acquire(self) -> bool:
        """Consume one token if available."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def available(self) -> float:
        """Get current tokens."""
        self._refill()
        return self._tokens

    def current_rate(self) -> float:
        return self.refill_rate

    def tick(self) -> None:
        self._refill()

    def replenish(self) -> None:
        """Refill to capacity."""
        self._tokens = self.max_tokens
        self._last_refill = self._clock()


class SlidingWindow:
    """Sliding window log.

    Admits while fewer than ``max_requests`` timestamps fall inside the
    half-open window ``(now - window_seconds, now]``.
    """

    kind = Strategy.SLIDING_WINDOW

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        self.window_seconds = float(window_seconds)
        self.max_requests = max_requests
        self._clock = clock
        self._timestamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def record(self, timestamp: float) -> None:
        """Record an admission at an explicit time."""
        self._timestamps.append(timestamp)

    def count(self) -> int:
        """Get admissions inside the current window."""
        self._prune(self._clock())
        return len(self._timestamps)

    def try_acquire(self) -> bool:
        """Record an admission if the window has room."""
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return True
        return False

    def available(self) -> float:
        return float(self.max_requests - self.count())

    def current_rate(self) -> float:
        """Get the configured admission rate per second."""
        return self.max_requests / self.window_seconds

    def tick(self) -> None:
        self._prune(self._clock())

    def replenish(self) -> None:
        """Empty the window."""
        self._timestamps.clear()


class AdaptiveBucket:
    """Token bucket whose refill rate follows observed response times.

    ``adjust`` slows the rate by ``adjustment_factor`` when the average
    response time is above target and speeds it up when the average is
    below 80% of target. The rate never drops below 1 per second.
    """

    kind = Strategy.ADAPTIVE

    def __init__(
        self,
        bucket: TokenBucket,
        target_response_ms: float = 1000,
        adjustment_factor: float = 0.1,
        sample_size: int = 100,
        min_samples: int = 10,
    ) -> None:
        if not 0 < adjustment_factor < 1:
            raise ValueError("adjustment_factor must be between 0 and 1")
        self.bucket = bucket
        self.target_response_ms = target_response_ms
        self.adjustment_factor = adjustment_factor
        self.min_samples = min_samples
        self._samples: deque[float] = deque(maxlen=sample_size)

    def record_response_time(self, duration_ms: float) -> None:
        self._samples.append(duration_ms)

    @property
    def average_response_ms(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def adjust(self) -> float:
        """Recompute the refill rate from recent samples.

        Returns:
            The refill rate after adjustment
        """
        if len(self._samples) < self.min_samples:
            return self.bucket.refill_rate

        average = self.average_response_ms
        rate = self.bucket.refill_rate
        if average > self.target_response_ms:
            rate = max(MIN_ADAPTIVE_RATE, rate * (1 - self.adjustment_factor))
        elif average < self.target_response_ms * 0.8:
            rate = max(MIN_ADAPTIVE_RATE, rate * (1 + self.adjustment_factor))

        # Bank tokens earned at the old rate before switching.
        self.bucket.tick()
        self.bucket.refill_rate = rate
        return rate

    def try_acquire(self) -> bool:
        return self.bucket.try_acquire()

    def available(self) -> float:
        return self.bucket.available()

    def current_rate(self) -> float:
        return self.bucket.refill_rate

    def tick(self) -> None:
        self.bucket.tick()

    def replenish(self) -> None:
        self.bucket.replenish()


StrategyState = Union[TokenBucket, SlidingWindow, AdaptiveBucket]


def build_strategy(
    config: RateLimiterConfig,
    clock: Callable[[], float] = time.monotonic,
) -> StrategyState:
    """Build fresh strategy state from configuration.

    Args:
        config: Rate limiter configuration
        clock: Monotonic time source in seconds

    Returns:
        Strategy state for ``config.strategy``
    """
    strategy = Strategy(config.strategy)
    if strategy is Strategy.SLIDING_WINDOW:
        return SlidingWindow(config.window_seconds, config.max_requests, clock)

    bucket = TokenBucket(config.max_tokens, config.refill_rate, clock)
    if strategy is Strategy.ADAPTIVE:
        return AdaptiveBucket(
            bucket,
            target_response_ms=config.target_response_ms,
            adjustment_factor=config.adjustment_factor,
        )
    return bucket
