"""
Retry policy with exponential backoff and jitter.

Failures are classified with :func:`classify_error`; only kinds in the
policy's retryable set are retried, and rate-limited failures honour a
server-provided retry-after hint.
"""

from __future__ import annotations

import asyncio
import functools
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from stateset_gateway.errors import (
    DEFAULT_RETRYABLE_KINDS,
    ErrorKind,
    GatewayError,
    RetryExhaustedError,
    classify_error,
    extract_retry_after,
)
from stateset_gateway.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from stateset_gateway.telemetry.metrics import MetricsCollector

T = TypeVar("T")

logger = get_logger("stateset_gateway.retry")


@dataclass
class RetryConfig:
    """Configuration for retry policy.

    Attributes:
        max_retries: Maximum number of retries after the first attempt (0 = no retries)
        base_delay_ms: Delay before the first retry in milliseconds
        max_delay_ms: Upper bound for a single delay in milliseconds
        backoff_multiplier: Growth factor between consecutive delays
        jitter_factor: Relative jitter applied to each delay (0-1)
        retryable_kinds: Error kinds that are retried
        should_retry: Optional predicate ``(error, attempt) -> bool`` that
            replaces the kind check when given
        on_retry: Optional callback ``(error, attempt, delay_ms)`` invoked
            before each sleep
        operation_name: Name used in logs and metric labels
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.2
    retryable_kinds: frozenset[ErrorKind] = field(default_factory=lambda: DEFAULT_RETRYABLE_KINDS)
    should_retry: Callable[[BaseException, int], bool] | None = None
    on_retry: Callable[[BaseException, int, float], None] | None = None
    operation_name: str = "unknown"

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        self.retryable_kinds = frozenset(self.retryable_kinds)

    @classmethod
    def fast(cls, **overrides: Any) -> RetryConfig:
        """Short delays for transient errors."""
        return cls(
            **{
                "max_retries": 2,
                "base_delay_ms": 100,
                "max_delay_ms": 1000,
                "jitter_factor": 0.1,
                **overrides,
            }
        )

    @classmethod
    def standard(cls, **overrides: Any) -> RetryConfig:
        """Balanced policy for most operations."""
        return cls(
            **{
                "max_retries": 3,
                "base_delay_ms": 1000,
                "max_delay_ms": 10000,
                "jitter_factor": 0.2,
                **overrides,
            }
        )

    @classmethod
    def aggressive(cls, **overrides: Any) -> RetryConfig:
        """More attempts for critical operations."""
        return cls(
            **{
                "max_retries": 5,
                "base_delay_ms": 500,
                "max_delay_ms": 30000,
                "jitter_factor": 0.3,
                **overrides,
            }
        )

    @classmethod
    def patient(cls, **overrides: Any) -> RetryConfig:
        """Long delays; only rate-limited and server errors are retried."""
        return cls(
            **{
                "max_retries": 3,
                "base_delay_ms": 5000,
                "max_delay_ms": 60000,
                "jitter_factor": 0.2,
                "retryable_kinds": frozenset({ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR}),
                **overrides,
            }
        )

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Create a config that disables retries."""
        return cls(max_retries=0)

    @classmethod
    def strict(cls, **overrides: Any) -> RetryConfig:
        """Default policy that does not retry unclassified failures.

        Intended for operations with side effects where a blind retry is unsafe.
        """
        return cls(
            **{
                "retryable_kinds": DEFAULT_RETRYABLE_KINDS - {ErrorKind.UNKNOWN},
                **overrides,
            }
        )


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Result of a retry operation.

    Attributes:
        success: Whether the operation succeeded
        value: The result value (if success)
        error: The last error (if failed)
        attempts: Number of attempts made
        total_delay_ms: Total delay from retries in milliseconds
        final_error_kind: Classification of the last error (if failed)
        exhausted: True when the last error was still retryable but the
            retry budget ran out
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_ms: float = 0.0
    final_error_kind: ErrorKind | None = None
    exhausted: bool = False
    operation_name: str = "unknown"

    def unwrap(self) -> T:
        """Return the value or raise the failure.

        Non-retryable failures are re-raised unchanged; exhausted retries
        raise :class:`RetryExhaustedError` chained from the last error.
        """
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise GatewayError(
                f"{self.operation_name} failed without recording an error",
                error_kind=self.final_error_kind,
            )
        if self.exhausted:
            raise RetryExhaustedError(
                self.error,
                error_kind=self.final_error_kind or ErrorKind.UNKNOWN,
                attempts=self.attempts,
                operation=self.operation_name,
            ) from self.error
        raise self.error


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Example:
        >>> policy = RetryPolicy(RetryConfig(max_retries=3, operation_name="get_order"))
        >>> result = await policy.execute(fetch_order)
        >>> if result.success:
        ...     print(result.value)
        ... else:
        ...     print(f"Failed after {result.attempts} attempts ({result.final_error_kind})")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize retry policy.

        Args:
            config: Retry configuration
            metrics: Collector receiving attempt/success/exhausted counters
        """
        self._config = config or RetryConfig()
        self._metrics = metrics

    @property
    def config(self) -> RetryConfig:
        return self._config

    def calculate_delay(
        self,
        attempt: int,
        error_kind: ErrorKind | None = None,
        error: BaseException | None = None,
    ) -> float:
        """Calculate delay before the retry that follows ``attempt``.

        Args:
            attempt: Attempt number that just failed (1-based)
            error_kind: Classification of the failure
            error: The failure, consulted for a retry-after hint

        Returns:
            Delay in milliseconds
        """
        cfg = self._config

        if error_kind == ErrorKind.RATE_LIMITED:
            hint = extract_retry_after(error) if error is not None else None
            if hint:
                return hint * 1000
            return float(cfg.max_delay_ms)

        delay = cfg.base_delay_ms * (cfg.backoff_multiplier ** (attempt - 1))
        delay = min(delay, cfg.max_delay_ms)
        jitter = delay * cfg.jitter_factor * random.uniform(-1, 1)
        return float(max(0, round(delay + jitter)))

    def should_retry(self, error: BaseException, attempt: int, error_kind: ErrorKind) -> bool:
        """Check if a failure qualifies for another attempt, ignoring the budget.

        Args:
            error: The exception that occurred
            attempt: Attempt number that failed (1-based)
            error_kind: Its classification

        Returns:
            True if the failure is retryable under this policy
        """
        if self._config.should_retry is not None:
            return bool(self._config.should_retry(error, attempt))
        return error_kind in self._config.retryable_kinds

    def _count(self, name: str, **labels: Any) -> None:
        if self._metrics is not None:
            self._metrics.increment(name, operation=self._config.operation_name, **labels)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> RetryResult[T]:
        """Execute an operation with retry.

        Never raises for operation failures; inspect the result or call
        :meth:`RetryResult.unwrap`.

        Args:
            operation: Async operation to execute

        Returns:
            RetryResult with success status and value/error
        """
        cfg = self._config
        name = cfg.operation_name
        total_delay = 0.0
        last_error: BaseException | None = None
        last_kind: ErrorKind | None = None
        exhausted = False
        attempt = 0

        for attempt in range(1, cfg.max_retries + 2):
            try:
                value = await operation()
            except Exception as e:
                last_error = e
                last_kind = classify_error(e)

                if not self.should_retry(e, attempt, last_kind):
                    logger.debug(
                        "Error not retryable",
                        operation=name,
                        error_kind=last_kind.value,
                        error=str(e),
                    )
                    break

                if attempt > cfg.max_retries:
                    exhausted = True
                    logger.warning(
                        "Max retries exceeded",
                        operation=name,
                        attempts=attempt,
                        total_delay_ms=total_delay,
                        error_kind=last_kind.value,
                    )
                    break

                delay_ms = self.calculate_delay(attempt, last_kind, e)
                total_delay += delay_ms

                if cfg.on_retry is not None:
                    cfg.on_retry(e, attempt, delay_ms)

                logger.debug(
                    "Retrying operation",
                    operation=name,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error_kind=last_kind.value,
                    error=str(e),
                )
                self._count("retry_attempt_total", error_kind=last_kind.value)

                await asyncio.sleep(delay_ms / 1000)
            else:
                if attempt > 1:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=name,
                        attempt=attempt,
                        total_delay_ms=total_delay,
                    )
                    self._count("retry_success_total")
                return RetryResult(
                    success=True,
                    value=value,
                    attempts=attempt,
                    total_delay_ms=total_delay,
                    operation_name=name,
                )

        if exhausted and last_kind is not None:
            self._count("retry_exhausted_total", error_kind=last_kind.value)
        return RetryResult(
            success=False,
            error=last_error,
            attempts=attempt,
            total_delay_ms=total_delay,
            final_error_kind=last_kind,
            exhausted=exhausted,
            operation_name=name,
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    metrics: MetricsCollector | None = None,
) -> RetryResult[T]:
    """Execute an operation with retry.

    Args:
        operation: Async operation to execute
        config: Retry configuration
        metrics: Optional metrics collector

    Returns:
        RetryResult describing the outcome
    """
    return await RetryPolicy(config, metrics).execute(operation)


def create_retryable(
    fn: Callable[..., Awaitable[T]],
    config: RetryConfig | None = None,
    metrics: MetricsCollector | None = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap a coroutine function so every call goes through a retry policy.

    The wrapper returns the value or raises as :meth:`RetryResult.unwrap` does.

    Example:
        >>> get_order = create_retryable(client.get_order, RetryConfig.fast())
        >>> order = await get_order("ord_123")
    """
    policy = RetryPolicy(config, metrics)

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        result = await policy.execute(lambda: fn(*args, **kwargs))
        return result.unwrap()

    return wrapper
