"""
Batch processor for grouping same-operation work.

Items added under the same operation key accumulate in a pending group.
A group is dispatched when it reaches ``max_batch_size`` or when
``max_wait_ms`` has passed since its oldest item joined. The processor
function runs once per group and its failure is shared by every item.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from stateset_gateway.errors import (
    ErrorKind,
    GatewayError,
    OperationTimeoutError,
    QueueClearedError,
    ShutdownError,
    classify_error,
)
from stateset_gateway.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from stateset_gateway.telemetry.metrics import MetricsCollector

T = TypeVar("T")
R = TypeVar("R")

logger = get_logger("stateset_gateway.batch")

SOURCE = "batch_processor"

BATCH_PROCESSED = "batchProcessed"
BATCH_ERROR = "error"

_NON_RETRYABLE = frozenset({ErrorKind.CLIENT_ERROR, ErrorKind.PERMANENT})


@dataclass
class BatchConfig:
    """Configuration for batch processing.

    Attributes:
        max_batch_size: Maximum items per dispatched group
        max_wait_ms: Maximum time an item waits before its group is dispatched
        max_concurrency: Maximum groups running at once
        default_timeout: Default item timeout in seconds (None = no limit)
        default_max_retries: Default group retry cap
        retry_base_delay_ms: Backoff before the first group retry
        retry_max_delay_ms: Upper bound for a group retry backoff
        enable_prioritization: Keep pending items ordered by priority
    """

    max_batch_size: int = 100
    max_wait_ms: float = 1000.0
    max_concurrency: int = 5
    default_timeout: float | None = 30.0
    default_max_retries: int = 3
    retry_base_delay_ms: float = 100.0
    retry_max_delay_ms: float = 5000.0
    enable_prioritization: bool = True

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.max_wait_ms < 0:
            raise ValueError("max_wait_ms must be >= 0")

    @classmethod
    def default(cls) -> BatchConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def for_reads(cls) -> BatchConfig:
        """Create configuration for list/get style reads."""
        return cls(
            max_batch_size=50,
            max_wait_ms=50.0,
            max_concurrency=10,
        )

    @classmethod
    def for_writes(cls) -> BatchConfig:
        """Create configuration for writes: smaller groups, fewer retries."""
        return cls(
            max_batch_size=25,
            max_wait_ms=200.0,
            max_concurrency=2,
            default_max_retries=1,
        )


@dataclass(eq=False)
class BatchItem(Generic[T]):
    """A pending item waiting for dispatch.

    Attributes:
        payload: Item data passed to the processor
        operation: Grouping key
        priority: Higher priority items are dispatched first
        future: Future resolved with the item's result
        added_at: Monotonic time the item was added
        timeout: Seconds the item may wait and run in total
        max_retries: Group retries this item allows
    """

    payload: T
    operation: str
    priority: int
    future: asyncio.Future[Any]
    added_at: float
    timeout: float | None
    max_retries: int
    seq: int = 0

    @property
    def deadline(self) -> float | None:
        if self.timeout is None:
            return None
        return self.added_at + self.timeout


@dataclass(frozen=True)
class BatchEvent:
    """Payload of ``batchProcessed`` and ``error`` events."""

    operation: str
    size: int
    duration_ms: float
    attempts: int
    error: BaseException | None = None


@dataclass(frozen=True)
class BatchStats:
    """Snapshot of batch processor statistics."""

    total_processed: int
    successful_operations: int
    failed_operations: int
    batches_dispatched: int
    average_batch_size: float
    average_processing_ms: float
    pending_items: int
    active_batches: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "successful_operations": self.successful_operations,
            "failed_operations": self.failed_operations,
            "batches_dispatched": self.batches_dispatched,
            "average_batch_size": self.average_batch_size,
            "average_processing_ms": self.average_processing_ms,
            "pending_items": self.pending_items,
            "active_batches": self.active_batches,
        }


@dataclass(frozen=True)
class BatchHealth:
    """Health summary of a batch processor."""

    healthy: bool
    error_rate: float
    queue_utilization: float
    oldest_wait_ms: float
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "error_rate": self.error_rate,
            "queue_utilization": self.queue_utilization,
            "oldest_wait_ms": self.oldest_wait_ms,
            "issues": list(self.issues),
        }


class BatchProcessor(Generic[T, R]):
    """Groups same-operation items and dispatches them together.

    Example:
        >>> async def fetch_orders(ids: list[str]) -> list[dict]:
        ...     return await api.bulk_get("orders", ids)
        ...
        >>> batcher = BatchProcessor(fetch_orders, BatchConfig(max_batch_size=20))
        >>> order = await batcher.add("ord_1", operation="get_order")
    """

    def __init__(
        self,
        processor: Callable[[list[T]], Awaitable[list[R]]],
        config: BatchConfig | None = None,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize batch processor.

        Args:
            processor: Async function mapping a payload list to a same-length result list
            config: Batch configuration
            metrics: Optional metrics collector
            clock: Monotonic time source in seconds
        """
        self._processor = processor
        self._config = config or BatchConfig.default()
        self._metrics = metrics
        self._clock = clock

        self._pending: dict[str, list[BatchItem[T]]] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._dispatches: set[asyncio.Task[None]] = set()
        self._listeners: dict[str, list[Callable[[BatchEvent], Any]]] = {}
        self._seq = itertools.count()
        self._closed = False

        self._total_processed = 0
        self._successful = 0
        self._failed = 0
        self._batches = 0
        self._active = 0
        self._recent_sizes: deque[int] = deque(maxlen=100)
        self._recent_durations: deque[float] = deque(maxlen=100)

    @property
    def config(self) -> BatchConfig:
        """Get batch configuration."""
        return self._config

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def add(
        self,
        payload: T,
        *,
        operation: str = "default",
        priority: int = 0,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> R:
        """Add an item and wait for its result.

        Args:
            payload: Item data
            operation: Grouping key
            priority: Dispatch priority within the group
            timeout: Seconds allowed for waiting and running (default: config)
            max_retries: Group retries allowed (default: config)

        Returns:
            The processor's result at this item's position

        Raises:
            ShutdownError: If the processor is closed
            OperationTimeoutError: If the timeout elapsed
            Exception: The processor's error for this item's group
        """
        if self._closed:
            raise ShutdownError(source=SOURCE, operation=operation)

        item: BatchItem[T] = BatchItem(
            payload=payload,
            operation=operation,
            priority=priority,
            future=asyncio.get_running_loop().create_future(),
            added_at=self._clock(),
            timeout=self._config.default_timeout if timeout is None else timeout,
            max_retries=self._config.default_max_retries if max_retries is None else max_retries,
            seq=next(self._seq),
        )

        group = self._pending.setdefault(operation, [])
        if self._config.enable_prioritization:
            bisect.insort(group, item, key=lambda i: (-i.priority, i.seq))
        else:
            group.append(item)

        if len(group) >= self._config.max_batch_size:
            self._flush_group(operation)
        elif operation not in self._timers:
            self._start_timer(operation, self._config.max_wait_ms / 1000.0)

        return await item.future

    async def add_many(
        self,
        payloads: Iterable[T],
        *,
        operation: str = "default",
        priority: int = 0,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> list[R]:
        """Add several items under one operation and wait for all results."""
        return list(
            await asyncio.gather(
                *(
                    self.add(
                        p,
                        operation=operation,
                        priority=priority,
                        timeout=timeout,
                        max_retries=max_retries,
                    )
                    for p in payloads
                )
            )
        )

    def _start_timer(self, operation: str, delay: float) -> None:
        self._timers[operation] = asyncio.get_running_loop().create_task(
            self._timer_flush(operation, delay)
        )

    async def _timer_flush(self, operation: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(operation, None)
        if self._pending.get(operation):
            self._flush_group(operation)

    def _cancel_timer(self, operation: str) -> None:
        timer = self._timers.pop(operation, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _flush_group(self, operation: str) -> asyncio.Task[None] | None:
        """Take up to one batch from a group and schedule its dispatch."""
        group = self._pending.get(operation)
        if not group:
            return None

        items = group[: self._config.max_batch_size]
        del group[: self._config.max_batch_size]
        self._cancel_timer(operation)

        if group:
            oldest = min(i.added_at for i in group)
            waited = self._clock() - oldest
            self._start_timer(operation, max(0.0, self._config.max_wait_ms / 1000.0 - waited))
        else:
            del self._pending[operation]

        task = asyncio.get_running_loop().create_task(self._dispatch(operation, items))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    async def _dispatch(self, operation: str, items: list[BatchItem[T]]) -> None:
        async with self._semaphore:
            live = self._expire(items)
            if not live:
                return
            self._active += 1
            try:
                await self._run_group(operation, live)
            finally:
                self._active -= 1

    def _expire(self, items: list[BatchItem[T]]) -> list[BatchItem[T]]:
        now = self._clock()
        live: list[BatchItem[T]] = []
        for item in items:
            if item.future.done():
                continue
            deadline = item.deadline
            if deadline is not None and now >= deadline:
                self._fail_items([item], OperationTimeoutError(item.operation, item.timeout or 0.0))
                continue
            live.append(item)
        return live

    async def _run_group(self, operation: str, items: list[BatchItem[T]]) -> None:
        payloads = [i.payload for i in items]
        deadlines = [d for d in (i.deadline for i in items) if d is not None]
        deadline = min(deadlines) if deadlines else None
        max_retries = max(0, min(i.max_retries for i in items))
        started = self._clock()
        self._batches += 1
        self._recent_sizes.append(len(items))
        if self._metrics is not None:
            self._metrics.observe("batch_size", len(items), operation=operation)

        for attempt in range(1, max_retries + 2):
            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                error = OperationTimeoutError(operation, deadline - min(i.added_at for i in items))
                self._fail_group(operation, items, error, attempt, started)
                return
            try:
                results = await self._call_processor(payloads, remaining, operation)
            except Exception as e:
                kind = classify_error(e)
                if kind in _NON_RETRYABLE or attempt > max_retries:
                    self._fail_group(operation, items, e, attempt, started)
                    return
                delay_ms = min(
                    self._config.retry_base_delay_ms * (2 ** (attempt - 1)),
                    self._config.retry_max_delay_ms,
                )
                logger.warning(
                    "Batch failed, retrying",
                    operation=operation,
                    size=len(items),
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error_kind=kind.value,
                )
                await asyncio.sleep(delay_ms / 1000)
                continue

            duration_ms = (self._clock() - started) * 1000
            for item, result in zip(items, results):
                if not item.future.done():
                    item.future.set_result(result)
            self._record(operation, len(items), duration_ms, success=True)
            self._emit(
                BATCH_PROCESSED,
                BatchEvent(operation, len(items), duration_ms, attempt),
            )
            return

    def _fail_group(
        self,
        operation: str,
        items: list[BatchItem[T]],
        error: BaseException,
        attempts: int,
        started: float,
    ) -> None:
        duration_ms = (self._clock() - started) * 1000
        logger.error(
            "Batch failed",
            operation=operation,
            size=len(items),
            attempts=attempts,
            error_kind=classify_error(error).value,
            error=str(error),
        )
        self._fail_items(items, error)
        self._record(operation, len(items), duration_ms, success=False)
        self._emit(
            BATCH_ERROR,
            BatchEvent(operation, len(items), duration_ms, attempts, error=error),
        )

    async def _call_processor(
        self, payloads: list[T], timeout: float | None, operation: str
    ) -> list[R]:
        try:
            if timeout is None:
                results = await self._processor(payloads)
            else:
                results = await asyncio.wait_for(self._processor(payloads), timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(operation, timeout or 0.0) from e

        if not isinstance(results, (list, tuple)) or len(results) != len(payloads):
            count = len(results) if isinstance(results, (list, tuple)) else type(results).__name__
            raise GatewayError(
                f"Batch processor returned {count} results for {len(payloads)} items",
                error_kind=ErrorKind.PERMANENT,
            )
        return list(results)

    def _fail_items(self, items: list[BatchItem[T]], error: BaseException) -> None:
        for item in items:
            if not item.future.done():
                item.future.set_exception(error)
        if self._metrics is not None:
            self._metrics.increment(
                "batch_failed_items_total",
                len(items),
                operation=items[0].operation if items else "unknown",
                error_kind=classify_error(error).value,
            )

    def _record(self, operation: str, size: int, duration_ms: float, *, success: bool) -> None:
        self._total_processed += size
        if success:
            self._successful += size
        else:
            self._failed += size
        self._recent_durations.append(duration_ms)
        if self._metrics is not None:
            self._metrics.observe("batch_processing_ms", duration_ms, operation=operation)
            self._metrics.increment(
                "batch_items_total",
                size,
                operation=operation,
                status="success" if success else "error",
            )

    def on(self, event: str, callback: Callable[[BatchEvent], Any]) -> None:
        """Register a listener for ``batchProcessed`` or ``error``."""
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable[[BatchEvent], Any]) -> None:
        """Remove a listener."""
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, data: BatchEvent) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(data)
            except Exception:
                logger.exception("Batch event listener failed", event=event)

    def get_pending_count(self, operation: str | None = None) -> int:
        """Get count of pending items.

        Args:
            operation: Group to count (all if None)

        Returns:
            Number of pending items
        """
        if operation is not None:
            return len(self._pending.get(operation, []))
        return sum(len(g) for g in self._pending.values())

    def get_stats(self) -> BatchStats:
        """Get a snapshot of processor statistics."""
        sizes, durations = self._recent_sizes, self._recent_durations
        return BatchStats(
            total_processed=self._total_processed,
            successful_operations=self._successful,
            failed_operations=self._failed,
            batches_dispatched=self._batches,
            average_batch_size=sum(sizes) / len(sizes) if sizes else 0.0,
            average_processing_ms=sum(durations) / len(durations) if durations else 0.0,
            pending_items=self.get_pending_count(),
            active_batches=self._active,
        )

    def get_health(self) -> BatchHealth:
        """Summarize processor health.

        Flags high queue utilization (> 80% of a batch pending), error rate
        above 10%, average processing above 5 s and items waiting over 10 s.
        """
        pending = self.get_pending_count()
        utilization = pending / self._config.max_batch_size
        finished = self._successful + self._failed
        error_rate = self._failed / finished if finished else 0.0
        stats = self.get_stats()

        now = self._clock()
        oldest = min(
            (i.added_at for g in self._pending.values() for i in g),
            default=now,
        )
        oldest_wait_ms = (now - oldest) * 1000

        issues: list[str] = []
        if utilization > 0.8:
            issues.append("High queue utilization")
        if error_rate > 0.1:
            issues.append("High error rate")
        if stats.average_processing_ms > 5000:
            issues.append("High processing latency")
        if oldest_wait_ms > 10000:
            issues.append("Operations waiting too long")

        return BatchHealth(
            healthy=not issues,
            error_rate=error_rate,
            queue_utilization=utilization,
            oldest_wait_ms=oldest_wait_ms,
            issues=issues,
        )

    def _take_pending(self) -> list[BatchItem[T]]:
        items = [i for g in self._pending.values() for i in g]
        self._pending.clear()
        for operation in list(self._timers):
            self._cancel_timer(operation)
        return items

    def clear_queue(self) -> int:
        """Reject every pending item with :class:`QueueClearedError`.

        Returns:
            Number of items rejected
        """
        items = self._take_pending()
        rejected = 0
        for item in items:
            if not item.future.done():
                item.future.set_exception(QueueClearedError(source=SOURCE, operation=item.operation))
                rejected += 1
        if rejected:
            logger.info("Batch queue cleared", rejected=rejected)
        return rejected

    def reprioritize(self, predicate: Callable[[BatchItem[T]], bool], priority: int) -> int:
        """Change the priority of matching pending items.

        Args:
            predicate: Selects items to update
            priority: New priority

        Returns:
            Number of items updated
        """
        updated = 0
        for group in self._pending.values():
            for item in group:
                if predicate(item):
                    item.priority = priority
                    updated += 1
            if self._config.enable_prioritization:
                group.sort(key=lambda i: (-i.priority, i.seq))
        return updated

    async def flush(self) -> None:
        """Dispatch every pending group now and wait for those dispatches."""
        tasks: list[asyncio.Task[None]] = []
        for operation in list(self._pending):
            while self._pending.get(operation):
                task = self._flush_group(operation)
                if task is not None:
                    tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Flush pending groups and wait for every running dispatch."""
        await self.flush()
        while self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting items, reject pending ones and wait for running groups."""
        if self._closed:
            return
        self._closed = True
        items = self._take_pending()
        for item in items:
            if not item.future.done():
                item.future.set_exception(ShutdownError(source=SOURCE, operation=item.operation))
        while self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)
        logger.debug("Batch processor closed", rejected=len(items))
