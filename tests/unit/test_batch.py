"""Tests for batch processing module."""

import asyncio

import pytest

from stateset_gateway.batch import (
    BATCH_ERROR,
    BATCH_PROCESSED,
    BatchConfig,
    BatchEvent,
    BatchProcessor,
)
from stateset_gateway.errors import (
    ErrorKind,
    GatewayError,
    OperationTimeoutError,
    QueueClearedError,
    RemoteError,
    ShutdownError,
)
from stateset_gateway.telemetry.metrics import MetricsCollector


class Recorder:
    """Batch processor function that records every call."""

    def __init__(self, failures: list[BaseException] | None = None) -> None:
        self.calls: list[list[object]] = []
        self._failures = list(failures or [])

    async def __call__(self, payloads: list[object]) -> list[object]:
        self.calls.append(list(payloads))
        if self._failures:
            raise self._failures.pop(0)
        return [f"result:{p}" for p in payloads]


class TestBatchConfig:
    """Tests for BatchConfig."""

    def test_default_config(self) -> None:
        """Test default configuration."""
        config = BatchConfig.default()
        assert config.max_batch_size == 100
        assert config.max_wait_ms == 1000.0
        assert config.max_concurrency == 5
        assert config.default_timeout == 30.0
        assert config.default_max_retries == 3

    def test_reads_config(self) -> None:
        """Test read configuration."""
        config = BatchConfig.for_reads()
        assert config.max_batch_size == 50
        assert config.max_wait_ms == 50.0
        assert config.max_concurrency == 10

    def test_writes_config(self) -> None:
        """Test write configuration."""
        config = BatchConfig.for_writes()
        assert config.max_batch_size == 25
        assert config.max_concurrency == 2
        assert config.default_max_retries == 1

    def test_validation(self) -> None:
        """Test invalid values."""
        with pytest.raises(ValueError):
            BatchConfig(max_batch_size=0)
        with pytest.raises(ValueError):
            BatchConfig(max_concurrency=0)


class TestBatchDispatch:
    """Tests for dispatch triggers."""

    @pytest.mark.asyncio
    async def test_size_trigger_dispatches_immediately(self) -> None:
        """Test a full group is dispatched without waiting."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=2, max_wait_ms=10_000))

        results = await asyncio.wait_for(
            asyncio.gather(
                batcher.add("a", operation="get_order"),
                batcher.add("b", operation="get_order"),
            ),
            timeout=1.0,
        )

        assert results == ["result:a", "result:b"]
        assert recorder.calls == [["a", "b"]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_wait_trigger(self) -> None:
        """Test a partial group is dispatched after max_wait_ms."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=20))

        result = await asyncio.wait_for(batcher.add("a"), timeout=1.0)

        assert result == "result:a"
        assert recorder.calls == [["a"]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_groups_by_operation(self) -> None:
        """Test different operations never share a dispatch."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=10))

        await asyncio.gather(
            batcher.add("o1", operation="get_order"),
            batcher.add("c1", operation="get_customer"),
            batcher.add("o2", operation="get_order"),
        )

        assert sorted(recorder.calls) == [["c1"], ["o1", "o2"]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_overflow_split(self) -> None:
        """Test a group larger than max_batch_size is split."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=2, max_wait_ms=10))

        results = await batcher.add_many(["a", "b", "c", "d", "e"])

        assert results == [f"result:{p}" for p in "abcde"]
        assert all(len(call) <= 2 for call in recorder.calls)
        assert sum(len(call) for call in recorder.calls) == 5
        await batcher.close()

    @pytest.mark.asyncio
    async def test_priority_order(self) -> None:
        """Test higher priority items come first within a group."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=10))

        await asyncio.gather(
            batcher.add("low", priority=0),
            batcher.add("high", priority=5),
            batcher.add("mid", priority=2),
            batcher.add("low-2", priority=0),
        )

        assert recorder.calls == [["high", "mid", "low", "low-2"]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_concurrency_limit(self) -> None:
        """Test no more than max_concurrency groups run at once."""
        running = 0
        peak = 0

        async def processor(payloads: list[str]) -> list[str]:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return payloads

        batcher = BatchProcessor(
            processor, BatchConfig(max_batch_size=1, max_wait_ms=10, max_concurrency=2)
        )

        await batcher.add_many(list(range(6)))

        assert peak == 2
        await batcher.close()


class TestBatchFailures:
    """Tests for group failure handling."""

    @pytest.mark.asyncio
    async def test_all_or_nothing(self) -> None:
        """Test a failing group rejects every item with the same error."""
        error = RemoteError.from_response(400, {"message": "unknown sku"})
        recorder = Recorder([error])
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=3, max_wait_ms=10))

        results = await asyncio.gather(
            batcher.add("a"), batcher.add("b"), batcher.add("c"), return_exceptions=True
        )

        assert all(r is error for r in results)
        assert len(recorder.calls) == 1
        await batcher.close()

    @pytest.mark.asyncio
    async def test_results_are_positional(self) -> None:
        """Test each caller receives the result at its own position."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=5, max_wait_ms=10))

        results = await asyncio.gather(*(batcher.add(i) for i in range(5)))

        assert results == [f"result:{i}" for i in range(5)]
        assert recorder.calls == [[0, 1, 2, 3, 4]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self) -> None:
        """Test a retryable group failure is retried."""
        recorder = Recorder([RemoteError.from_response(503)])
        batcher = BatchProcessor(
            recorder, BatchConfig(max_batch_size=2, max_wait_ms=10, retry_base_delay_ms=1)
        )

        results = await batcher.add_many(["a", "b"])

        assert results == ["result:a", "result:b"]
        assert len(recorder.calls) == 2
        await batcher.close()

    @pytest.mark.asyncio
    async def test_retry_cap(self) -> None:
        """Test a group stops after its retry budget."""
        recorder = Recorder([RemoteError.from_response(503)] * 5)
        batcher = BatchProcessor(
            recorder, BatchConfig(max_batch_size=1, max_wait_ms=10, retry_base_delay_ms=1)
        )

        with pytest.raises(RemoteError):
            await batcher.add("a", max_retries=1)

        assert len(recorder.calls) == 2
        await batcher.close()

    @pytest.mark.asyncio
    async def test_negative_retry_cap_runs_once(self) -> None:
        """Test a negative retry cap still dispatches once and rejects the item."""
        recorder = Recorder([RemoteError.from_response(503)] * 3)
        batcher = BatchProcessor(
            recorder, BatchConfig(max_batch_size=1, max_wait_ms=10, retry_base_delay_ms=1)
        )
        failures: list[BatchEvent] = []
        batcher.on(BATCH_ERROR, failures.append)

        with pytest.raises(RemoteError):
            await batcher.add("a", max_retries=-1)

        assert len(recorder.calls) == 1
        assert [e.attempts for e in failures] == [1]
        assert batcher.get_stats().failed_operations == 1
        await batcher.close()

    @pytest.mark.asyncio
    async def test_length_mismatch(self) -> None:
        """Test a wrong result count fails the whole group."""

        async def processor(payloads: list[str]) -> list[str]:
            return payloads[:1]

        batcher = BatchProcessor(processor, BatchConfig(max_batch_size=2, max_wait_ms=10))

        results = await asyncio.gather(batcher.add("a"), batcher.add("b"), return_exceptions=True)

        for result in results:
            assert isinstance(result, GatewayError)
            assert result.error_kind == ErrorKind.PERMANENT
            assert "returned 1 results for 2 items" in result.message
        await batcher.close()

    @pytest.mark.asyncio
    async def test_item_timeout(self) -> None:
        """Test an item whose timeout passed before dispatch is rejected."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=50))

        with pytest.raises(OperationTimeoutError):
            await batcher.add("a", timeout=0.01)

        assert recorder.calls == []
        await batcher.close()

    @pytest.mark.asyncio
    async def test_slow_processor_times_out(self) -> None:
        """Test the group deadline bounds the processor call."""

        async def processor(payloads: list[str]) -> list[str]:
            await asyncio.sleep(10)
            return payloads

        batcher = BatchProcessor(
            processor, BatchConfig(max_batch_size=1, max_wait_ms=10, default_max_retries=0)
        )

        with pytest.raises(OperationTimeoutError):
            await batcher.add("a", timeout=0.05)
        await batcher.close()


class TestBatchEvents:
    """Tests for event listeners."""

    @pytest.mark.asyncio
    async def test_processed_and_error_events(self) -> None:
        """Test listeners receive both events."""
        events: list[tuple[str, BatchEvent]] = []
        recorder = Recorder([ValueError("malformed payload")])
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=1, max_wait_ms=10))
        batcher.on(BATCH_PROCESSED, lambda e: events.append((BATCH_PROCESSED, e)))
        batcher.on(BATCH_ERROR, lambda e: events.append((BATCH_ERROR, e)))

        with pytest.raises(ValueError):
            await batcher.add("a", operation="create_order")
        await batcher.add("b", operation="create_order")

        assert [name for name, _ in events] == [BATCH_ERROR, BATCH_PROCESSED]
        assert isinstance(events[0][1].error, ValueError)
        assert events[1][1].size == 1
        assert events[1][1].operation == "create_order"
        await batcher.close()

    @pytest.mark.asyncio
    async def test_listener_failure_isolated(self) -> None:
        """Test a raising listener does not affect results."""

        def broken(event: BatchEvent) -> None:
            raise RuntimeError("listener bug")

        batcher = BatchProcessor(Recorder(), BatchConfig(max_batch_size=1, max_wait_ms=10))
        batcher.on(BATCH_PROCESSED, broken)

        assert await batcher.add("a") == "result:a"

        batcher.off(BATCH_PROCESSED, broken)
        await batcher.close()


class TestBatchManagement:
    """Tests for stats, health and queue management."""

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, metrics: MetricsCollector) -> None:
        """Test counters after successful and failed groups."""
        recorder = Recorder([RemoteError.from_response(404)])
        batcher = BatchProcessor(
            recorder, BatchConfig(max_batch_size=2, max_wait_ms=10), metrics=metrics
        )

        await asyncio.gather(batcher.add("a"), batcher.add("b"), return_exceptions=True)
        await batcher.add_many(["c", "d"])

        stats = batcher.get_stats()
        assert stats.total_processed == 4
        assert stats.successful_operations == 2
        assert stats.failed_operations == 2
        assert stats.batches_dispatched == 2
        assert stats.average_batch_size == 2.0
        assert stats.pending_items == 0
        assert metrics.get_counter("batch_items_total") == 4
        assert metrics.get_histogram("batch_size", operation="default").count == 2

        health = batcher.get_health()
        assert not health.healthy
        assert "High error rate" in health.issues
        await batcher.close()

    @pytest.mark.asyncio
    async def test_queue_utilization_issue(self) -> None:
        """Test a nearly full pending group is reported."""
        batcher = BatchProcessor(Recorder(), BatchConfig(max_batch_size=10, max_wait_ms=10_000))

        tasks = [asyncio.create_task(batcher.add(i)) for i in range(9)]
        await asyncio.sleep(0)

        assert batcher.get_pending_count() == 9
        health = batcher.get_health()
        assert health.queue_utilization == pytest.approx(0.9)
        assert health.issues == ["High queue utilization"]

        await batcher.flush()
        await asyncio.gather(*tasks)
        assert batcher.get_health().healthy
        await batcher.close()

    @pytest.mark.asyncio
    async def test_clear_queue(self) -> None:
        """Test clearing rejects pending items."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=10_000))

        tasks = [asyncio.create_task(batcher.add(i, operation="list")) for i in range(3)]
        await asyncio.sleep(0)

        assert batcher.clear_queue() == 3
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, QueueClearedError) for r in results)
        assert recorder.calls == []
        await batcher.close()

    @pytest.mark.asyncio
    async def test_reprioritize(self) -> None:
        """Test changing priorities reorders the pending group."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=10_000))

        tasks = [asyncio.create_task(batcher.add(p)) for p in ("a", "b", "c")]
        await asyncio.sleep(0)

        assert batcher.reprioritize(lambda item: item.payload == "c", 9) == 1
        await batcher.flush()
        await asyncio.gather(*tasks)

        assert recorder.calls == [["c", "a", "b"]]
        await batcher.close()

    @pytest.mark.asyncio
    async def test_drain(self) -> None:
        """Test drain dispatches pending groups and waits for them."""
        recorder = Recorder()
        batcher = BatchProcessor(recorder, BatchConfig(max_batch_size=10, max_wait_ms=10_000))

        task = asyncio.create_task(batcher.add("a"))
        await asyncio.sleep(0)
        await batcher.drain()

        assert batcher.get_pending_count() == 0
        assert await task == "result:a"
        await batcher.close()

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        """Test closing rejects pending items and new adds."""
        batcher = BatchProcessor(Recorder(), BatchConfig(max_batch_size=10, max_wait_ms=10_000))

        task = asyncio.create_task(batcher.add("a"))
        await asyncio.sleep(0)
        await batcher.close()

        with pytest.raises(ShutdownError):
            await task
        with pytest.raises(ShutdownError):
            await batcher.add("b")
        assert batcher.is_closed
