"""
Priority-queued rate limiter.

Every request enters a priority queue (higher priority first, FIFO among
equals). The queue is drained synchronously whenever capacity may have
changed: on enqueue, on every tick, after a manual refill and after a
strategy change. Admitted requests run concurrently as separate tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Any, TypeVar

from stateset_gateway.errors import (
    DEFAULT_RETRYABLE_KINDS,
    QueueClearedError,
    ShutdownError,
    classify_error,
)
from stateset_gateway.resilience.strategies import (
    AdaptiveBucket,
    Strategy,
    StrategyState,
    build_strategy,
)
from stateset_gateway.resilience.timeout import run_with_timeout
from stateset_gateway.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from stateset_gateway.telemetry.metrics import MetricsCollector

T = TypeVar("T")

logger = get_logger("stateset_gateway.rate_limiter")

SOURCE = "rate_limiter"

# Pass as `timeout` to run without the configured default timeout.
NO_TIMEOUT = float("inf")


class Priority(IntEnum):
    """Request priority. Any integer is accepted; higher runs first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter.

    Attributes:
        strategy: Admission strategy
        max_tokens: Bucket capacity (token bucket, adaptive)
        refill_rate: Tokens added per second (token bucket, adaptive)
        window_seconds: Window length (sliding window)
        max_requests: Admissions allowed per window (sliding window)
        target_response_ms: Target average response time (adaptive)
        adjustment_factor: Relative rate change per adjustment (adaptive)
        tick_interval: Seconds between background refill/drain ticks
        adjust_interval: Seconds between adaptive rate adjustments
        retry_attempts: Default re-enqueues for retryable failures
        retry_delay_ms: Base backoff before a re-enqueue
        default_timeout: Default per-request timeout in seconds (None = no limit)
    """

    strategy: Strategy = Strategy.TOKEN_BUCKET
    max_tokens: float = 10
    refill_rate: float = 50 / 60
    window_seconds: float = 60
    max_requests: int = 50
    target_response_ms: float = 1000
    adjustment_factor: float = 0.1
    tick_interval: float = 1.0
    adjust_interval: float = 5.0
    retry_attempts: int = 3
    retry_delay_ms: float = 1000
    default_timeout: float | None = None

    def __post_init__(self) -> None:
        self.strategy = Strategy(self.strategy)
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")

    @classmethod
    def from_rpm(
        cls,
        rpm: float,
        burst_size: float | None = None,
        strategy: Strategy = Strategy.TOKEN_BUCKET,
        **overrides: Any,
    ) -> RateLimiterConfig:
        """Create config from requests per minute.

        Args:
            rpm: Requests per minute
            burst_size: Bucket capacity (defaults to 10)
            strategy: Admission strategy

        Returns:
            RateLimiterConfig instance
        """
        return cls(
            strategy=strategy,
            max_tokens=burst_size if burst_size is not None else 10,
            refill_rate=rpm / 60.0,
            window_seconds=60,
            max_requests=max(1, int(rpm)),
            **overrides,
        )


@dataclass(frozen=True)
class RateLimiterMetrics:
    """Read-only snapshot of rate limiter state.

    Attributes:
        total_requests: Calls to ``execute``
        accepted_requests: Requests admitted at least once
        rejected_requests: Requests whose caller received an error
        queued_requests: Requests waiting for admission or for a backoff re-enqueue
        available_capacity: Tokens or window slots available now
        current_rate: Admissions per second the strategy allows
        average_wait_ms: Mean time between enqueue and admission
        strategy: Active strategy name
    """

    total_requests: int
    accepted_requests: int
    rejected_requests: int
    queued_requests: int
    available_capacity: float
    current_rate: float
    average_wait_ms: float
    strategy: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "accepted_requests": self.accepted_requests,
            "rejected_requests": self.rejected_requests,
            "queued_requests": self.queued_requests,
            "available_capacity": self.available_capacity,
            "current_rate": self.current_rate,
            "average_wait_ms": self.average_wait_ms,
            "strategy": self.strategy,
        }


@dataclass(eq=False)
class _QueuedRequest:
    operation: Callable[[], Awaitable[Any]]
    operation_name: str
    priority: int
    future: asyncio.Future[Any]
    retries_remaining: int
    timeout: float | None
    enqueued_at: float
    requeues: int = 0
    admitted: bool = False
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class RateLimiter:
    """Priority-queued rate limiter over a pluggable admission strategy.

    Example:
        >>> limiter = RateLimiter(RateLimiterConfig.from_rpm(100, burst_size=20))
        >>> order = await limiter.execute(fetch_order, "get_order", Priority.HIGH)
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize rate limiter.

        Args:
            config: Rate limiter configuration
            metrics: Optional metrics collector
            clock: Monotonic time source in seconds
        """
        self._config = config or RateLimiterConfig()
        self._metrics = metrics
        self._clock = clock
        self._strategy: StrategyState = build_strategy(self._config, clock)

        self._queue: list[tuple[int, int, _QueuedRequest]] = []
        self._seq = itertools.count()
        self._backoff: set[_QueuedRequest] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._ticker: asyncio.Task[None] | None = None
        self._closed = False

        self._total = 0
        self._accepted = 0
        self._rejected = 0
        self._wait_samples: deque[float] = deque(maxlen=100)

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def strategy(self) -> Strategy:
        return self._config.strategy

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background tick task.

        Must be called from a running event loop. ``execute`` calls it lazily.
        """
        if self._closed:
            raise ShutdownError(source=SOURCE)
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.get_running_loop().create_task(self._run_ticker())

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "unknown",
        priority: int = Priority.NORMAL,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run an operation once admitted.

        Args:
            operation: Async operation to execute
            operation_name: Name used in logs and metrics
            priority: Queue priority (higher first)
            retries: Re-enqueues allowed for retryable failures
                (default: ``config.retry_attempts``)
            timeout: Per-attempt timeout in seconds (default: ``config.default_timeout``;
                ``NO_TIMEOUT`` for no limit)

        Returns:
            Operation result

        Raises:
            ShutdownError: If the limiter is closed
            QueueClearedError: If the request was cleared before it ran
            Exception: The operation's own error when it is not retried
        """
        if self._closed:
            raise ShutdownError(source=SOURCE, operation=operation_name)
        self.start()

        request = _QueuedRequest(
            operation=operation,
            operation_name=operation_name,
            priority=int(priority),
            future=asyncio.get_running_loop().create_future(),
            retries_remaining=self._config.retry_attempts if retries is None else retries,
            timeout=self._resolve_timeout(timeout),
            enqueued_at=self._clock(),
        )
        self._total += 1
        self._push(request)
        self._drain()
        return await request.future

    def _resolve_timeout(self, timeout: float | None) -> float | None:
        if timeout is None:
            return self._config.default_timeout
        if timeout == NO_TIMEOUT:
            return None
        return timeout

    def _push(self, request: _QueuedRequest) -> None:
        heapq.heappush(self._queue, (-request.priority, next(self._seq), request))

    def _drain(self) -> None:
        while self._queue:
            request = self._queue[0][2]
            if request.future.done():
                # Caller gave up while queued.
                heapq.heappop(self._queue)
                continue
            if not self._strategy.try_acquire():
                break
            heapq.heappop(self._queue)
            self._admit(request)

        if self._metrics is not None:
            self._metrics.set_gauge("rate_limiter_queue_size", len(self._queue))

    def _admit(self, request: _QueuedRequest) -> None:
        wait_ms = (self._clock() - request.enqueued_at) * 1000
        self._wait_samples.append(wait_ms)
        if not request.admitted:
            request.admitted = True
            self._accepted += 1
        if self._metrics is not None:
            self._metrics.observe("rate_limiter_wait_ms", wait_ms, operation=request.operation_name)

        task = asyncio.get_running_loop().create_task(self._run(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, request: _QueuedRequest) -> None:
        started = self._clock()
        try:
            result = await run_with_timeout(
                request.operation, request.timeout, request.operation_name
            )
        except Exception as e:
            self.record_response_time((self._clock() - started) * 1000)
            self._handle_failure(request, e)
        else:
            self.record_response_time((self._clock() - started) * 1000)
            if not request.future.done():
                request.future.set_result(result)

    def _handle_failure(self, request: _QueuedRequest, error: Exception) -> None:
        kind = classify_error(error)
        if (
            kind in DEFAULT_RETRYABLE_KINDS
            and request.retries_remaining > 0
            and not self._closed
            and not request.future.done()
        ):
            request.retries_remaining -= 1
            request.requeues += 1
            delay_ms = self._config.retry_delay_ms * (2 ** (request.requeues - 1))
            logger.warning(
                "Re-enqueueing failed request",
                operation=request.operation_name,
                error_kind=kind.value,
                delay_ms=delay_ms,
                retries_remaining=request.retries_remaining,
            )
            if self._metrics is not None:
                self._metrics.increment(
                    "rate_limiter_requeue_total",
                    operation=request.operation_name,
                    error_kind=kind.value,
                )
            request.handle = asyncio.get_running_loop().call_later(
                delay_ms / 1000, self._requeue, request
            )
            self._backoff.add(request)
            return

        self._reject(request, error, kind.value)

    def _requeue(self, request: _QueuedRequest) -> None:
        self._backoff.discard(request)
        request.handle = None
        if self._closed:
            return
        request.enqueued_at = self._clock()
        self._push(request)
        self._drain()

    def _reject(self, request: _QueuedRequest, error: BaseException, kind: str) -> None:
        if request.future.done():
            return
        self._rejected += 1
        request.future.set_exception(error)
        if self._metrics is not None:
            self._metrics.increment(
                "rate_limiter_rejected_total", operation=request.operation_name, error_kind=kind
            )

    def _pending(self) -> list[_QueuedRequest]:
        pending = [entry[2] for entry in self._queue]
        pending.extend(self._backoff)
        self._queue.clear()
        for request in self._backoff:
            if request.handle is not None:
                request.handle.cancel()
                request.handle = None
        self._backoff.clear()
        return [r for r in pending if not r.future.done()]

    def clear_queue(self) -> int:
        """Reject every queued request with :class:`QueueClearedError`.

        Requests waiting out a re-enqueue backoff are rejected too.

        Returns:
            Number of requests rejected
        """
        pending = self._pending()
        for request in pending:
            error = QueueClearedError(source=SOURCE, operation=request.operation_name)
            self._reject(request, error, error.error_kind.value)
        if pending:
            logger.info("Rate limiter queue cleared", rejected=len(pending))
        return len(pending)

    def change_strategy(self, strategy: Strategy | str) -> None:
        """Switch admission strategy at runtime.

        Counters are kept; tokens and window contents start over.
        """
        new_strategy = Strategy(strategy)
        previous = self._config.strategy
        self._config = replace(self._config, strategy=new_strategy)
        self._strategy = build_strategy(self._config, self._clock)
        logger.info(
            "Rate limiting strategy changed",
            previous=previous.value,
            strategy=new_strategy.value,
        )
        self._drain()

    def refill(self) -> None:
        """Replenish capacity to full and drain the queue."""
        self._strategy.replenish()
        self._drain()

    def record_response_time(self, duration_ms: float) -> None:
        """Feed an observed response time to the adaptive strategy."""
        if isinstance(self._strategy, AdaptiveBucket):
            self._strategy.record_response_time(duration_ms)

    async def _run_ticker(self) -> None:
        ticks_per_adjust = max(1, round(self._config.adjust_interval / self._config.tick_interval))
        ticks = 0
        while not self._closed:
            await asyncio.sleep(self._config.tick_interval)
            ticks += 1
            self._strategy.tick()
            if isinstance(self._strategy, AdaptiveBucket) and ticks % ticks_per_adjust == 0:
                before = self._strategy.current_rate()
                after = self._strategy.adjust()
                if after != before:
                    logger.debug(
                        "Adaptive rate adjusted",
                        previous_rate=before,
                        rate=after,
                        average_response_ms=self._strategy.average_response_ms,
                    )
            self._drain()

    def get_metrics(self) -> RateLimiterMetrics:
        """Get a snapshot of rate limiter state."""
        samples = self._wait_samples
        return RateLimiterMetrics(
            total_requests=self._total,
            accepted_requests=self._accepted,
            rejected_requests=self._rejected,
            queued_requests=len(self._queue) + len(self._backoff),
            available_capacity=self._strategy.available(),
            current_rate=self._strategy.current_rate(),
            average_wait_ms=sum(samples) / len(samples) if samples else 0.0,
            strategy=self._config.strategy.value,
        )

    async def _wait_idle(self) -> None:
        while self._queue or self._backoff or self._tasks:
            if self._tasks:
                await asyncio.wait(set(self._tasks))
            else:
                await asyncio.sleep(min(0.05, self._config.tick_interval))

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued and in-flight requests to finish.

        Args:
            timeout: Seconds to wait (None = until idle)

        Returns:
            True if the limiter went idle, False on timeout
        """
        try:
            await asyncio.wait_for(self._wait_idle(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Rate limiter drain timed out",
                queued=len(self._queue) + len(self._backoff),
                in_flight=len(self._tasks),
            )
            return False
        return True

    async def close(self) -> None:
        """Stop ticking, reject queued requests and wait for in-flight ones."""
        if self._closed:
            return
        self._closed = True

        if self._ticker is not None:
            self._ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker
            self._ticker = None

        pending = self._pending()
        for request in pending:
            error = ShutdownError(source=SOURCE, operation=request.operation_name)
            self._reject(request, error, error.error_kind.value)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.debug("Rate limiter closed", rejected=len(pending))
