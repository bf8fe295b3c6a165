"""Root pytest fixtures for stateset-gateway tests."""

from __future__ import annotations

import pytest

from stateset_gateway.telemetry.metrics import MetricsCollector


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Provide a fresh metrics collector."""
    return MetricsCollector()


class FlakyOperation:
    """Async callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures: list[BaseException], result: object = "ok") -> None:
        self._failures = list(failures)
        self._result = result
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._result


@pytest.fixture
def flaky() -> type[FlakyOperation]:
    """Provide the FlakyOperation factory."""
    return FlakyOperation
