"""错误基类：提供分层错误体系和结构化错误上下文。

Base error classes for stateset-gateway.

Provides a layered error hierarchy:
- GatewayError: Base class for all gateway errors
- RemoteError: Remote API answered with an error status
- TransportError: Request never got a response
- OperationTimeoutError: A unit of work exceeded its timeout
- RetryExhaustedError: Retries ran out on a retryable failure
- QueueRejectedError: Queued work rejected before it ran (cleared, shut down)
- ConfigurationError: Invalid settings
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import Any

from stateset_gateway.errors.classification import ErrorKind, classify_status


@dataclass
class ErrorContext:
    """Structured error context for diagnostics."""

    source: str | None = None
    """Error source (e.g., 'remote', 'transport', 'rate_limiter')"""

    operation: str | None = None
    """Operation name the error belongs to"""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class GatewayError(Exception):
    """Base class for all stateset-gateway errors.

    Attributes:
        message: Human-readable error message
        context: Structured error context
        error_kind: Classification used by retry and queueing decisions
    """

    error_kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        error_kind: ErrorKind | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        if error_kind is not None:
            self.error_kind = error_kind
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> GatewayError:
        """Add a hint to this error."""
        self.context.hint = hint
        return self


class RemoteError(GatewayError):
    """Error returned by the remote business API.

    Attributes:
        status_code: HTTP status code
        retry_after: Suggested retry delay in seconds (from header)
        body: Parsed error body, if any
        request_id: Request identifier echoed by the API
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        error_kind: ErrorKind | None = None,
        retry_after: float | None = None,
        body: Any = None,
        request_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        ctx = ErrorContext(source="remote", operation=operation)
        ctx.details["status_code"] = status_code
        if request_id:
            ctx.details["request_id"] = request_id

        super().__init__(
            message,
            ctx,
            error_kind=error_kind or classify_status(status_code),
        )
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body
        self.request_id = request_id

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: Any = None,
        headers: dict[str, str] | None = None,
        operation: str | None = None,
    ) -> RemoteError:
        """Create RemoteError from an HTTP error response.

        Args:
            status_code: HTTP status code
            body: Response body (parsed JSON or text)
            headers: Response headers
            operation: Operation name

        Returns:
            RemoteError with a status-derived classification
        """
        detail = extract_error_message(body)
        message = f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}"
        headers = {k.lower(): v for k, v in (headers or {}).items()}

        retry_after = None
        if "retry-after" in headers:
            with contextlib.suppress(ValueError):
                retry_after = float(headers["retry-after"])

        request_id = headers.get("x-request-id") or headers.get("request-id")

        return cls(
            message=message,
            status_code=status_code,
            retry_after=retry_after,
            body=body,
            request_id=request_id,
            operation=operation,
        )


class TransportError(GatewayError):
    """Request failed before a response arrived.

    Raised for connection failures, DNS errors and transport timeouts.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        timed_out: bool = False,
        cause: BaseException | None = None,
        operation: str | None = None,
    ) -> None:
        ctx = ErrorContext(source="transport", operation=operation)
        if url:
            ctx.details["url"] = url
        super().__init__(
            message,
            ctx,
            error_kind=ErrorKind.TIMEOUT if timed_out else ErrorKind.NETWORK,
        )
        self.url = url
        self.__cause__ = cause


class OperationTimeoutError(GatewayError):
    """A unit of work did not finish within its timeout."""

    error_kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"Operation timed out after {timeout * 1000:.0f}ms",
            ErrorContext(source="timeout", operation=operation),
        )
        self.operation = operation
        self.timeout = timeout


class RetryExhaustedError(GatewayError):
    """Retries ran out while the failure was still retryable.

    Attributes:
        last_error: The final underlying exception
        attempts: Number of attempts made
    """

    def __init__(
        self,
        last_error: BaseException,
        *,
        error_kind: ErrorKind,
        attempts: int,
        operation: str | None = None,
    ) -> None:
        ctx = ErrorContext(source="retry", operation=operation)
        ctx.details["attempts"] = attempts
        ctx.details["error_kind"] = error_kind.value
        super().__init__(
            f"Gave up after {attempts} attempts ({error_kind.value}): {last_error}",
            ctx,
            error_kind=error_kind,
        )
        self.last_error = last_error
        self.attempts = attempts
        self.__cause__ = last_error


class QueueRejectedError(GatewayError):
    """Queued work was rejected before it ran.

    Never produced by a remote failure, and never retried.
    """

    error_kind = ErrorKind.PERMANENT

    def __init__(self, message: str, *, source: str, operation: str | None = None) -> None:
        super().__init__(message, ErrorContext(source=source, operation=operation))


class QueueClearedError(QueueRejectedError):
    """Pending work rejected by an explicit queue clear."""

    def __init__(self, *, source: str, operation: str | None = None) -> None:
        super().__init__("Queue cleared", source=source, operation=operation)


class ShutdownError(QueueRejectedError):
    """Pending work rejected because the component is closed."""

    def __init__(self, *, source: str, operation: str | None = None) -> None:
        super().__init__(f"{source} is closed", source=source, operation=operation)


class ConfigurationError(GatewayError):
    """Settings failed validation."""

    error_kind = ErrorKind.PERMANENT

    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        ctx = ErrorContext(source="config")
        if fields:
            ctx.details["fields"] = fields
        super().__init__(message, ctx)
        self.fields = fields or []


def extract_error_message(body: Any) -> str | None:
    """Extract an error message from a response body.

    Supports ``{"error": {"message": ...}}``, ``{"error": "..."}``,
    ``{"message": ...}`` and ``{"detail": ...}`` envelopes as well as plain
    text bodies.

    Args:
        body: Response body

    Returns:
        Error message if found, None otherwise
    """
    if not body:
        return None
    if isinstance(body, str):
        return body.strip() or None
    if not isinstance(body, dict):
        return None

    if "error" in body:
        error = body["error"]
        if isinstance(error, dict):
            msg = error.get("message")
            if isinstance(msg, str):
                return msg
        elif isinstance(error, str):
            return error

    if isinstance(body.get("message"), str):
        return body["message"]

    detail = body.get("detail")
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list) and detail:
        return str(detail[0])

    return None
