"""HTTP 传输层：基于 httpx 的异步 HTTP 客户端，负责鉴权头与错误映射。

HTTP transport for the remote business API.

Provides:
- Lazy ``httpx.AsyncClient`` creation
- Bearer authentication, API version and request ID headers
- Mapping of transport failures and error statuses onto gateway errors
"""

from __future__ import annotations

import uuid
from contextlib import suppress
from typing import Any

import httpx

from stateset_gateway.errors import RemoteError, TransportError
from stateset_gateway.telemetry.logger import get_log_context, get_logger

logger = get_logger("stateset_gateway.transport")

_DEFAULT_TIMEOUT = 10.0
_DEFAULT_CONNECT_TIMEOUT = 5.0

_UA_VERSION: str | None = None


def _get_ua_version() -> str:
    """Get package version for User-Agent (cached)."""
    global _UA_VERSION
    if _UA_VERSION is None:
        from importlib.metadata import PackageNotFoundError, version

        try:
            _UA_VERSION = version("stateset-gateway")
        except PackageNotFoundError:
            _UA_VERSION = "0.1.0"
    return _UA_VERSION


class HttpTransport:
    """HTTP transport for the remote API.

    Example:
        >>> transport = HttpTransport("https://api.stateset.com/v1", api_key="sk_live_...")
        >>> orders = await transport.request_json("GET", "/orders", params={"limit": 10})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        api_version: str = "v1",
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize HTTP transport.

        Args:
            base_url: API base URL
            api_key: Bearer token
            api_version: Sent as ``X-API-Version``
            timeout: Request timeout in seconds
            headers: Extra headers sent with every request
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_version = api_version
        self._timeout = timeout if timeout is not None else _DEFAULT_TIMEOUT
        self._extra_headers = dict(headers or {})
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout, connect=min(_DEFAULT_CONNECT_TIMEOUT, self._timeout)),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _build_headers(
        self,
        extra_headers: dict[str, str] | None = None,
        request_id: str | None = None,
    ) -> dict[str, str]:
        """Build request headers.

        The request ID comes from the argument, then the logging context,
        then a fresh UUID.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"stateset-gateway/{_get_ua_version()}",
            "X-API-Version": self._api_version,
            "X-Request-ID": request_id or get_log_context().request_id or str(uuid.uuid4()),
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(self._extra_headers)
        if extra_headers:
            headers.update(extra_headers)
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        operation: str | None = None,
        request_id: str | None = None,
    ) -> httpx.Response:
        """Make an HTTP request.

        Args:
            method: HTTP method
            path: Request path (relative to base URL)
            json: JSON body
            params: Query parameters
            headers: Additional headers
            operation: Operation name carried by errors
            request_id: Explicit ``X-Request-ID``

        Returns:
            HTTP response

        Raises:
            TransportError: On network/connection errors and timeouts
            RemoteError: On API errors (4xx, 5xx)
        """
        client = self._get_client()
        request_headers = self._build_headers(headers, request_id)
        url = f"{self._base_url}{path}"

        try:
            response = await client.request(
                method=method,
                url=path,
                json=json,
                params=params,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out: {e}",
                url=url,
                timed_out=True,
                cause=e,
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Connection failed: {e}",
                url=url,
                cause=e,
                operation=operation,
            ) from e

        if response.status_code >= 400:
            body: Any = None
            with suppress(ValueError):
                body = response.json()
            if body is None:
                body = response.text or None

            logger.debug(
                "Remote API returned an error",
                method=method,
                path=path,
                status_code=response.status_code,
                operation=operation,
            )
            raise RemoteError.from_response(
                status_code=response.status_code,
                body=body,
                headers=dict(response.headers),
                operation=operation,
            )

        return response

    async def request_json(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """Make a request and decode the JSON body.

        Empty bodies decode to None; non-JSON bodies are returned as text.
        """
        response = await self.request(method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a GET request."""
        return await self.request("GET", path, params=params, headers=headers)

    async def post(
        self,
        path: str,
        json: Any,
        *,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a POST request."""
        return await self.request("POST", path, json=json, headers=headers)

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
