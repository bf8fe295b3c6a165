"""Tests for retry and timeout modules."""

import asyncio

import pytest

from stateset_gateway.errors import (
    ErrorKind,
    GatewayError,
    OperationTimeoutError,
    RemoteError,
    RetryExhaustedError,
)
from stateset_gateway.resilience.retry import (
    RetryConfig,
    RetryPolicy,
    RetryResult,
    create_retryable,
    with_retry,
)
from stateset_gateway.resilience.timeout import run_with_timeout
from stateset_gateway.telemetry.metrics import MetricsCollector


def _quick(**overrides: object) -> RetryConfig:
    return RetryConfig(**{"base_delay_ms": 1, "max_delay_ms": 5, "jitter_factor": 0.0, **overrides})


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_config(self) -> None:
        """Test default configuration."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.backoff_multiplier == 2.0
        assert config.jitter_factor == 0.2
        assert ErrorKind.CLIENT_ERROR not in config.retryable_kinds

    def test_presets(self) -> None:
        """Test preset configurations."""
        assert RetryConfig.fast().max_retries == 2
        assert RetryConfig.fast().base_delay_ms == 100
        assert RetryConfig.standard().max_delay_ms == 10000
        assert RetryConfig.aggressive().max_retries == 5
        assert RetryConfig.patient().retryable_kinds == {
            ErrorKind.RATE_LIMITED,
            ErrorKind.SERVER_ERROR,
        }
        assert RetryConfig.no_retry().max_retries == 0
        assert ErrorKind.UNKNOWN not in RetryConfig.strict().retryable_kinds

    def test_preset_overrides(self) -> None:
        """Test presets accept overrides."""
        config = RetryConfig.fast(max_retries=7, operation_name="get_order")
        assert config.max_retries == 7
        assert config.base_delay_ms == 100
        assert config.operation_name == "get_order"

    def test_validation(self) -> None:
        """Test invalid values are rejected."""
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)
        with pytest.raises(ValueError):
            RetryConfig(jitter_factor=1.5)
        with pytest.raises(ValueError):
            RetryConfig(base_delay_ms=-1)


class TestRetryDelay:
    """Tests for delay calculation."""

    def test_exponential_without_jitter(self) -> None:
        """Test delays grow by the multiplier."""
        policy = RetryPolicy(RetryConfig(base_delay_ms=100, jitter_factor=0.0))
        assert policy.calculate_delay(1) == 100
        assert policy.calculate_delay(2) == 200
        assert policy.calculate_delay(3) == 400

    def test_capped_at_max_delay(self) -> None:
        """Test delays never exceed max_delay_ms."""
        policy = RetryPolicy(RetryConfig(base_delay_ms=1000, max_delay_ms=3000, jitter_factor=0.0))
        assert policy.calculate_delay(10) == 3000

    def test_jitter_bounds(self) -> None:
        """Test jitter stays within the factor."""
        policy = RetryPolicy(RetryConfig(base_delay_ms=1000, jitter_factor=0.2))
        for _ in range(50):
            delay = policy.calculate_delay(1)
            assert 800 <= delay <= 1200

    def test_rate_limited_uses_hint(self) -> None:
        """Test a retry-after hint overrides backoff."""
        policy = RetryPolicy(RetryConfig())
        error = RemoteError("slow down", status_code=429, retry_after=2)
        assert policy.calculate_delay(1, ErrorKind.RATE_LIMITED, error) == 2000

    def test_rate_limited_without_hint(self) -> None:
        """Test rate limiting without a hint waits the maximum delay."""
        policy = RetryPolicy(RetryConfig(max_delay_ms=4000))
        error = RuntimeError("rate limit exceeded")
        assert policy.calculate_delay(1, ErrorKind.RATE_LIMITED, error) == 4000


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test successful operation on first try."""

        async def operation() -> str:
            return "success"

        result = await RetryPolicy(_quick()).execute(operation)

        assert result.success
        assert result.value == "success"
        assert result.attempts == 1
        assert result.total_delay_ms == 0

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, flaky) -> None:
        """Test two server errors followed by success."""
        operation = flaky([RemoteError.from_response(503), RemoteError.from_response(503)])

        result = await RetryPolicy(_quick(max_retries=3)).execute(operation)

        assert result.success
        assert result.value == "ok"
        assert result.attempts == 3
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_stops_after_max_retries(self, flaky) -> None:
        """Test a persistent retryable failure runs max_retries + 1 times."""
        operation = flaky([RemoteError.from_response(503)] * 10)

        result = await RetryPolicy(_quick(max_retries=2)).execute(operation)

        assert not result.success
        assert result.exhausted
        assert result.attempts == 3
        assert operation.calls == 3
        assert result.final_error_kind == ErrorKind.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, flaky) -> None:
        """Test client errors fail after one attempt."""
        operation = flaky([RemoteError.from_response(400, {"message": "bad sku"})])

        result = await RetryPolicy(_quick(max_retries=5)).execute(operation)

        assert not result.success
        assert not result.exhausted
        assert result.attempts == 1
        assert operation.calls == 1
        assert result.final_error_kind == ErrorKind.CLIENT_ERROR

    @pytest.mark.asyncio
    async def test_zero_retries(self, flaky) -> None:
        """Test max_retries=0 makes exactly one attempt."""
        operation = flaky([RuntimeError("connection reset")])

        result = await RetryPolicy(_quick(max_retries=0)).execute(operation)

        assert result.attempts == 1
        assert result.exhausted

    @pytest.mark.asyncio
    async def test_should_retry_predicate_overrides_kinds(self, flaky) -> None:
        """Test a custom predicate replaces the kind check."""
        operation = flaky([RemoteError.from_response(404), RemoteError.from_response(404)])
        config = _quick(should_retry=lambda error, attempt: attempt < 3)

        result = await RetryPolicy(config).execute(operation)

        assert result.success
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, flaky) -> None:
        """Test the callback sees every retry."""
        seen: list[tuple[int, float]] = []
        operation = flaky([RuntimeError("timeout"), RuntimeError("timeout")])
        config = _quick(on_retry=lambda error, attempt, delay: seen.append((attempt, delay)))

        await RetryPolicy(config).execute(operation)

        assert [attempt for attempt, _ in seen] == [1, 2]
        assert all(delay >= 0 for _, delay in seen)

    @pytest.mark.asyncio
    async def test_metrics(self, flaky, metrics: MetricsCollector) -> None:
        """Test attempt, success and exhausted counters."""
        ok = flaky([RemoteError.from_response(502)])
        await RetryPolicy(_quick(operation_name="get_order"), metrics).execute(ok)

        assert metrics.get_counter("retry_attempt_total", operation="get_order", error_kind="server_error") == 1
        assert metrics.get_counter("retry_success_total", operation="get_order") == 1

        bad = flaky([RemoteError.from_response(502)] * 5)
        await RetryPolicy(_quick(max_retries=1, operation_name="get_order"), metrics).execute(bad)

        assert metrics.get_counter("retry_exhausted_total", operation="get_order", error_kind="server_error") == 1

    @pytest.mark.asyncio
    async def test_non_retryable_not_counted_as_exhausted(
        self, flaky, metrics: MetricsCollector
    ) -> None:
        """Test a client error stopped on the first attempt is not an exhaustion."""
        operation = flaky([RemoteError.from_response(400)] * 5)
        result = await RetryPolicy(_quick(max_retries=3, operation_name="create_order"), metrics).execute(
            operation
        )

        assert result.attempts == 1
        assert not result.exhausted
        assert metrics.get_counter(
            "retry_exhausted_total", operation="create_order", error_kind="client_error"
        ) == 0
        assert metrics.get_counter("retry_exhausted_total") == 0


class TestRetryResult:
    """Tests for RetryResult.unwrap."""

    def test_unwrap_success(self) -> None:
        """Test unwrapping a value."""
        assert RetryResult(success=True, value=42, attempts=1).unwrap() == 42

    def test_unwrap_non_retryable_reraises(self) -> None:
        """Test non-retryable failures surface unchanged."""
        error = RemoteError.from_response(404)
        result: RetryResult[int] = RetryResult(
            success=False, error=error, attempts=1, final_error_kind=ErrorKind.CLIENT_ERROR
        )
        with pytest.raises(RemoteError) as exc_info:
            result.unwrap()
        assert exc_info.value is error

    def test_unwrap_exhausted(self) -> None:
        """Test exhausted retries raise RetryExhaustedError."""
        error = RemoteError.from_response(503)
        result: RetryResult[int] = RetryResult(
            success=False,
            error=error,
            attempts=4,
            final_error_kind=ErrorKind.SERVER_ERROR,
            exhausted=True,
        )
        with pytest.raises(RetryExhaustedError) as exc_info:
            result.unwrap()
        assert exc_info.value.last_error is error
        assert exc_info.value.attempts == 4

    def test_unwrap_failure_without_error(self) -> None:
        """Test a failed result with no recorded error still raises."""
        result: RetryResult[int] = RetryResult(success=False, attempts=1, operation_name="sync")
        with pytest.raises(GatewayError, match="sync failed without recording an error"):
            result.unwrap()


class TestHelpers:
    """Tests for with_retry and create_retryable."""

    @pytest.mark.asyncio
    async def test_with_retry(self, flaky) -> None:
        """Test the functional entry point."""
        operation = flaky([RuntimeError("network unreachable")], result={"id": "ord_1"})

        result = await with_retry(operation, _quick())

        assert result.success
        assert result.value == {"id": "ord_1"}
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_create_retryable_passes_arguments(self) -> None:
        """Test the wrapper forwards arguments and keeps metadata."""
        calls: list[str] = []

        async def get_order(order_id: str) -> str:
            """Fetch an order."""
            calls.append(order_id)
            if len(calls) < 2:
                raise RuntimeError("service unavailable")
            return order_id.upper()

        wrapped = create_retryable(get_order, _quick())

        assert await wrapped("ord_1") == "ORD_1"
        assert calls == ["ord_1", "ord_1"]
        assert wrapped.__name__ == "get_order"

    @pytest.mark.asyncio
    async def test_create_retryable_raises(self, flaky) -> None:
        """Test the wrapper raises on exhaustion."""
        operation = flaky([GatewayError("flaky", error_kind=ErrorKind.TRANSIENT)] * 3)
        wrapped = create_retryable(operation, _quick(max_retries=1))

        with pytest.raises(RetryExhaustedError):
            await wrapped()


class TestRunWithTimeout:
    """Tests for run_with_timeout."""

    @pytest.mark.asyncio
    async def test_completes_in_time(self) -> None:
        """Test fast work returns its value."""

        async def work() -> int:
            return 1

        assert await run_with_timeout(work, 1.0) == 1

    @pytest.mark.asyncio
    async def test_no_timeout(self) -> None:
        """Test a None timeout never fires."""

        async def work() -> int:
            await asyncio.sleep(0.01)
            return 2

        assert await run_with_timeout(work, None) == 2

    @pytest.mark.asyncio
    async def test_times_out_and_cancels(self) -> None:
        """Test slow work is cancelled with a timeout error."""
        cancelled = asyncio.Event()

        async def work() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(OperationTimeoutError) as exc_info:
            await run_with_timeout(work, 0.01, "slow_op")

        assert exc_info.value.error_kind == ErrorKind.TIMEOUT
        assert exc_info.value.context.operation == "slow_op"
        assert cancelled.is_set()
