"""
Integration test helper utilities.

Shared fixtures and mock API helpers for gateway integration tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from stateset_gateway.config import GatewaySettings

if TYPE_CHECKING:
    import pytest_httpx

BASE_URL = "https://api.example.com/v1"


def mock_order(order_id: str = "ord_1", status: str = "open") -> dict[str, Any]:
    """Create a mock order resource."""
    return {"id": order_id, "object": "order", "status": status, "total": 4200}


def setup_mock_order_response(
    httpx_mock: pytest_httpx.HTTPXMock,
    order_id: str = "ord_1",
    status_code: int = 200,
) -> None:
    """Register a GET /orders/{id} response."""
    if status_code >= 400:
        httpx_mock.add_response(
            method="GET",
            url=f"{BASE_URL}/orders/{order_id}",
            status_code=status_code,
            json={"error": {"message": f"upstream status {status_code}"}},
        )
    else:
        httpx_mock.add_response(
            method="GET",
            url=f"{BASE_URL}/orders/{order_id}",
            json=mock_order(order_id),
        )


@pytest.fixture
def settings() -> GatewaySettings:
    """Settings with fast retries and a generous rate limit."""
    return GatewaySettings.from_dict(
        {
            "api": {"base_url": BASE_URL, "api_key": "sk_test_integration"},
            "rate_limit": {"requests_per_minute": 600, "burst_size": 50, "retry_attempts": 0},
            "retry": {
                "max_retries": 3,
                "base_delay_ms": 1,
                "max_delay_ms": 5,
                "jitter_factor": 0,
            },
            "batch": {"max_batch_size": 2, "max_wait_ms": 10},
        }
    )
