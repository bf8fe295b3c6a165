"""Tests for transport module."""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from stateset_gateway.errors import ErrorKind, RemoteError, TransportError
from stateset_gateway.telemetry.logger import log_context
from stateset_gateway.transport import HttpTransport

BASE_URL = "https://api.example.com/v1"


class TestHeaders:
    """Tests for request header construction."""

    def test_default_headers(self) -> None:
        """Test authentication and version headers."""
        transport = HttpTransport(BASE_URL, api_key="sk_test_123", api_version="2024-01")
        headers = transport._build_headers()
        assert headers["Authorization"] == "Bearer sk_test_123"
        assert headers["X-API-Version"] == "2024-01"
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"].startswith("stateset-gateway/")
        assert headers["X-Request-ID"]

    def test_no_key_no_auth_header(self) -> None:
        """Test requests without an API key."""
        assert "Authorization" not in HttpTransport(BASE_URL)._build_headers()

    def test_request_id_sources(self) -> None:
        """Test explicit, context and generated request ids."""
        transport = HttpTransport(BASE_URL)
        assert transport._build_headers(request_id="req_explicit")["X-Request-ID"] == "req_explicit"
        with log_context(request_id="req_ctx"):
            assert transport._build_headers()["X-Request-ID"] == "req_ctx"
        first = transport._build_headers()["X-Request-ID"]
        second = transport._build_headers()["X-Request-ID"]
        assert first != second

    def test_extra_headers(self) -> None:
        """Test constructor and per-call headers."""
        transport = HttpTransport(BASE_URL, headers={"X-Tenant": "acme"})
        headers = transport._build_headers({"X-Trace": "t1"})
        assert headers["X-Tenant"] == "acme"
        assert headers["X-Trace"] == "t1"

    def test_base_url_trailing_slash(self) -> None:
        """Test the base URL is normalised."""
        assert HttpTransport(BASE_URL + "/").base_url == BASE_URL


class TestRequests:
    """Tests for requests against a mocked API."""

    @pytest.mark.asyncio
    async def test_request_json(self, httpx_mock: HTTPXMock) -> None:
        """Test a successful JSON request."""
        httpx_mock.add_response(
            method="GET",
            url=f"{BASE_URL}/orders?status=open",
            json={"data": [{"id": "ord_1"}]},
        )

        async with HttpTransport(BASE_URL, api_key="sk_test_1") as transport:
            body = await transport.request_json("GET", "/orders", params={"status": "open"})

        assert body == {"data": [{"id": "ord_1"}]}
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "Bearer sk_test_1"

    @pytest.mark.asyncio
    async def test_post_json_body(self, httpx_mock: HTTPXMock) -> None:
        """Test the JSON body is sent."""
        httpx_mock.add_response(method="POST", url=f"{BASE_URL}/orders", json={"id": "ord_2"})

        async with HttpTransport(BASE_URL) as transport:
            response = await transport.post("/orders", {"sku": "A-1", "qty": 2})

        assert response.json() == {"id": "ord_2"}
        request = httpx_mock.get_request()
        assert request is not None
        assert json.loads(request.content) == {"sku": "A-1", "qty": 2}

    @pytest.mark.asyncio
    async def test_empty_and_text_bodies(self, httpx_mock: HTTPXMock) -> None:
        """Test non-JSON success bodies."""
        httpx_mock.add_response(method="DELETE", url=f"{BASE_URL}/orders/ord_1", status_code=204)
        httpx_mock.add_response(method="GET", url=f"{BASE_URL}/health", text="OK")

        async with HttpTransport(BASE_URL) as transport:
            assert await transport.request_json("DELETE", "/orders/ord_1") is None
            assert await transport.request_json("GET", "/health") == "OK"

    @pytest.mark.asyncio
    async def test_error_status(self, httpx_mock: HTTPXMock) -> None:
        """Test error statuses become RemoteError."""
        httpx_mock.add_response(
            method="GET",
            url=f"{BASE_URL}/orders/missing",
            status_code=404,
            json={"error": {"message": "Order not found"}},
            headers={"X-Request-ID": "req_remote"},
        )

        async with HttpTransport(BASE_URL) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.get("/orders/missing")

        error = exc_info.value
        assert error.status_code == 404
        assert error.error_kind == ErrorKind.CLIENT_ERROR
        assert error.message == "HTTP 404: Order not found"
        assert error.request_id == "req_remote"

    @pytest.mark.asyncio
    async def test_rate_limited_status(self, httpx_mock: HTTPXMock) -> None:
        """Test 429 responses carry the retry-after hint."""
        httpx_mock.add_response(
            method="GET",
            url=f"{BASE_URL}/orders",
            status_code=429,
            text="slow down",
            headers={"Retry-After": "3"},
        )

        async with HttpTransport(BASE_URL) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.request("GET", "/orders", operation="list_orders")

        assert exc_info.value.error_kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 3.0
        assert exc_info.value.context.operation == "list_orders"

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock: HTTPXMock) -> None:
        """Test transport timeouts."""
        httpx_mock.add_exception(httpx.ReadTimeout("read timed out"))

        async with HttpTransport(BASE_URL) as transport:
            with pytest.raises(TransportError) as exc_info:
                await transport.get("/orders")

        assert exc_info.value.error_kind == ErrorKind.TIMEOUT
        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_connection_error(self, httpx_mock: HTTPXMock) -> None:
        """Test connection failures."""
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        async with HttpTransport(BASE_URL) as transport:
            with pytest.raises(TransportError) as exc_info:
                await transport.get("/orders")

        assert exc_info.value.error_kind == ErrorKind.NETWORK
        assert exc_info.value.url == f"{BASE_URL}/orders"
