"""网关上下文：显式构造并注入缓存、限流、重试与批处理组件，管理其生命周期。

Gateway context.

Owns one instance of every resilience component and composes them for
each call: cache lookup, then rate limiter admission around the retry
engine around the timed work. Lifecycle is construct, ``start``, serve,
``drain``, ``close``.
"""

from __future__ import annotations

import dataclasses
import time
from typing import TYPE_CHECKING, Any, TypeVar

from stateset_gateway.batch.processor import BatchConfig, BatchProcessor
from stateset_gateway.cache.adaptive import AdaptiveCache
from stateset_gateway.cache.key import CacheKeyGenerator
from stateset_gateway.config import GatewaySettings
from stateset_gateway.errors import ErrorKind, GatewayError, ShutdownError, classify_error
from stateset_gateway.resilience.rate_limiter import NO_TIMEOUT, Priority, RateLimiter
from stateset_gateway.resilience.retry import RetryConfig, RetryPolicy
from stateset_gateway.resilience.timeout import run_with_timeout
from stateset_gateway.telemetry.logger import GatewayLogger, get_logger, log_context
from stateset_gateway.telemetry.metrics import MetricsCollector
from stateset_gateway.transport.http import HttpTransport

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

T = TypeVar("T")

logger = get_logger("stateset_gateway.context")

SOURCE = "gateway"


class GatewayContext:
    """Explicitly constructed container for the gateway's components.

    Example:
        >>> async with GatewayContext(GatewaySettings.from_env()) as gateway:
        ...     orders = await gateway.request("GET", "/orders", operation="list_orders")
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        *,
        metrics: MetricsCollector | None = None,
        transport: HttpTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        configure_logging: bool = False,
        drain_timeout: float = 30.0,
    ) -> None:
        """Initialize the context.

        Args:
            settings: Gateway settings (defaults when None)
            metrics: Shared metrics collector (a new one when None)
            transport: HTTP transport (built from ``settings.api`` when None)
            clock: Monotonic time source shared by cache, limiter and batches
            configure_logging: Apply ``settings.logging`` on ``start``
            drain_timeout: Seconds ``__aexit__`` waits for queued work
        """
        self.settings = settings or GatewaySettings()
        self.metrics = metrics or MetricsCollector()
        self._clock = clock
        self._configure_logging = configure_logging
        self._drain_timeout = drain_timeout

        self.cache: AdaptiveCache[Any] = AdaptiveCache(
            self.settings.to_cache_config(), metrics=self.metrics, clock=clock
        )
        self.rate_limiter = RateLimiter(
            self.settings.to_rate_limiter_config(), metrics=self.metrics, clock=clock
        )
        self.keys = CacheKeyGenerator()
        self.transport = transport or HttpTransport(
            self.settings.api.base_url,
            self.settings.api.api_key,
            api_version=self.settings.api.api_version,
            timeout=self.settings.api.timeout,
        )
        self._batches: dict[str, BatchProcessor[Any, Any]] = {}
        self._started = False
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def retry_config(self, operation_name: str) -> RetryConfig:
        """Get the default retry configuration for an operation."""
        return self.settings.to_retry_config(operation_name)

    async def start(self) -> None:
        """Start background tasks. Must run inside the event loop."""
        if self._closed:
            raise ShutdownError(source=SOURCE)
        if self._started:
            return
        if self._configure_logging:
            GatewayLogger.configure(self.settings.logging.level, self.settings.logging.format)
        self.rate_limiter.start()
        if self.settings.cache.enabled:
            self.cache.start()
        self._started = True
        logger.info(
            "Gateway started",
            strategy=self.rate_limiter.strategy.value,
            cache_enabled=self.settings.cache.enabled,
        )

    async def execute(
        self,
        operation_name: str,
        priority: int,
        work: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
        retry: RetryConfig | None = None,
    ) -> T:
        """Run work under rate limiting and retry.

        The rate limiter admits the call once; retries happen inside that
        admission and the limiter's own re-enqueue is disabled.

        Args:
            operation_name: Operation name for logs and metrics
            priority: Queue priority
            work: Async unit of work
            timeout: Per-attempt timeout in seconds
                (default: the rate limiter's ``default_timeout``)
            retry: Retry configuration (default: settings for this operation)

        Returns:
            The work's result

        Raises:
            RetryExhaustedError: If retryable failures outlasted the policy
            ShutdownError: If the gateway is closed
            Exception: Non-retryable failures, unchanged
        """
        if self._closed:
            raise ShutdownError(source=SOURCE, operation=operation_name)

        config = retry or self.retry_config(operation_name)
        if config.operation_name == "unknown":
            config = dataclasses.replace(config, operation_name=operation_name)
        policy = RetryPolicy(config, self.metrics)
        if timeout is None:
            timeout = self.rate_limiter.config.default_timeout

        async def attempt() -> T:
            return await run_with_timeout(work, timeout, operation_name)

        async def admitted() -> T:
            result = await policy.execute(attempt)
            return result.unwrap()

        started = self._clock()
        with log_context(operation=operation_name):
            try:
                value = await self.rate_limiter.execute(
                    admitted, operation_name, priority, retries=0, timeout=NO_TIMEOUT
                )
            except Exception as e:
                kind = classify_error(e)
                self.metrics.increment(
                    "gateway_requests_total", operation=operation_name, status="error"
                )
                self.metrics.increment(
                    "gateway_errors_total", operation=operation_name, error_kind=kind.value
                )
                logger.warning(
                    "Operation failed",
                    operation=operation_name,
                    error_kind=kind.value,
                    error=str(e),
                )
                raise
            finally:
                self.metrics.observe(
                    "gateway_request_duration_ms",
                    (self._clock() - started) * 1000,
                    operation=operation_name,
                )

        self.metrics.increment("gateway_requests_total", operation=operation_name, status="success")
        return value

    async def call(
        self,
        operation_name: str,
        work: Callable[[], Awaitable[T]],
        *,
        arguments: Mapping[str, Any] | None = None,
        priority: int = Priority.NORMAL,
        cacheable: bool = False,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run work through the cache and then :meth:`execute`.

        Args:
            operation_name: Operation name
            work: Async unit of work
            arguments: Call arguments used for the cache fingerprint
            priority: Queue priority
            cacheable: Serve from and populate the cache
            ttl: Explicit cache TTL in seconds
            tags: Cache tags
            timeout: Per-attempt timeout in seconds

        Returns:
            The cached or fresh result
        """

        async def fetch() -> T:
            return await self.execute(operation_name, priority, work, timeout=timeout)

        if not (cacheable and self.settings.cache.enabled):
            return await fetch()

        key = self.keys.generate(operation_name, arguments)
        return await self.cache.get_or_set(key, fetch, ttl=ttl, tags=tags)

    def register_batch(
        self,
        operation: str,
        processor: Callable[[list[Any]], Awaitable[list[Any]]],
        config: BatchConfig | None = None,
    ) -> BatchProcessor[Any, Any]:
        """Register a batch processor for an operation.

        Raises:
            GatewayError: If the operation already has a processor
        """
        if operation in self._batches:
            raise GatewayError(
                f"Batch processor already registered for {operation}",
                error_kind=ErrorKind.PERMANENT,
            )
        batcher: BatchProcessor[Any, Any] = BatchProcessor(
            processor,
            config or self.settings.to_batch_config(),
            metrics=self.metrics,
            clock=self._clock,
        )
        self._batches[operation] = batcher
        return batcher

    def get_batch(self, operation: str) -> BatchProcessor[Any, Any] | None:
        return self._batches.get(operation)

    async def batch(
        self,
        operation: str,
        payload: Any,
        *,
        priority: int = 0,
        timeout: float | None = None,
    ) -> Any:
        """Add a payload to the operation's batch processor.

        Raises:
            GatewayError: If no processor is registered for ``operation``
        """
        if self._closed:
            raise ShutdownError(source=SOURCE, operation=operation)
        batcher = self._batches.get(operation)
        if batcher is None:
            raise GatewayError(
                f"No batch processor registered for {operation}",
                error_kind=ErrorKind.PERMANENT,
            )
        return await batcher.add(payload, operation=operation, priority=priority, timeout=timeout)

    async def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        priority: int = Priority.NORMAL,
        cacheable: bool | None = None,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Call the remote API through cache, rate limiter and retry.

        GET requests are cacheable unless ``cacheable`` says otherwise.

        Returns:
            Decoded JSON body
        """
        method = method.upper()
        if cacheable is None:
            cacheable = method == "GET"
        arguments = {"method": method, "path": path, "params": params, "json": json}

        async def work() -> Any:
            return await self.transport.request_json(
                method, path, params=params, json=json, operation=operation
            )

        return await self.call(
            operation,
            work,
            arguments=arguments,
            priority=priority,
            cacheable=cacheable,
            ttl=ttl,
            tags=tags,
            timeout=timeout,
        )

    def get_metrics(self) -> dict[str, Any]:
        """Get a read-only snapshot of every component."""
        return {
            "cache": self.cache.get_stats().to_dict(),
            "rate_limiter": self.rate_limiter.get_metrics().to_dict(),
            "batch": {
                operation: {
                    "stats": batcher.get_stats().to_dict(),
                    "health": batcher.get_health().to_dict(),
                }
                for operation, batcher in self._batches.items()
            },
            "metrics": self.metrics.snapshot(),
        }

    async def drain(self, timeout: float | None = None) -> bool:
        """Flush batch groups and wait for queued work.

        Returns:
            True if the rate limiter went idle within ``timeout``
        """
        for batcher in self._batches.values():
            await batcher.drain()
        return await self.rate_limiter.drain(timeout)

    async def close(self) -> None:
        """Reject leftover work, stop timers and close the transport."""
        if self._closed:
            return
        self._closed = True
        for batcher in self._batches.values():
            await batcher.close()
        await self.rate_limiter.close()
        await self.cache.close()
        await self.transport.close()
        logger.info("Gateway closed")

    async def __aenter__(self) -> GatewayContext:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, *args: Any) -> None:
        try:
            if exc_type is None:
                await self.drain(self._drain_timeout)
        finally:
            await self.close()
