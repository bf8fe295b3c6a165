"""错误分类模块：将异常、HTTP 状态码和错误信息映射到八种错误类别。

Error classification for retry and queueing decisions.

Maps any failure onto one of eight error kinds using explicit attributes,
exception types, HTTP status codes, OS error codes and message heuristics.
"""

from __future__ import annotations

import errno
import re
import socket
from enum import Enum


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the retry engine, rate limiter and batches."""

    TRANSIENT = "transient"
    """Temporary condition that may succeed on retry."""

    RATE_LIMITED = "rate_limited"
    """Throttled by the remote side; retry after waiting."""

    NETWORK = "network"
    """Connection-level failure (refused, reset, DNS)."""

    TIMEOUT = "timeout"
    """Request or unit of work exceeded its deadline."""

    SERVER_ERROR = "server_error"
    """Remote 5xx failure."""

    CLIENT_ERROR = "client_error"
    """Remote 4xx failure caused by the request shape; never retried."""

    PERMANENT = "permanent"
    """Failure that cannot change on retry."""

    UNKNOWN = "unknown"
    """No signal matched."""


# Retried unless a policy says otherwise. UNKNOWN is treated optimistically.
DEFAULT_RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.TRANSIENT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNKNOWN,
    }
)

_STATUS_MAPPING: dict[int, ErrorKind] = {
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMITED,
    500: ErrorKind.SERVER_ERROR,
    502: ErrorKind.SERVER_ERROR,
    503: ErrorKind.SERVER_ERROR,
    504: ErrorKind.SERVER_ERROR,
}

_NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.EPIPE,
    }
)

# Message heuristics, evaluated top to bottom.
_MESSAGE_RULES: list[tuple[ErrorKind, re.Pattern[str]]] = [
    (
        ErrorKind.RATE_LIMITED,
        re.compile(r"rate[ _-]?limit|too many requests|\b429\b"),
    ),
    (
        ErrorKind.TIMEOUT,
        re.compile(r"timeout|timed out|econnaborted"),
    ),
    (
        ErrorKind.NETWORK,
        re.compile(r"econnrefused|econnreset|enotfound|network|socket|\bdns\b|connection"),
    ),
    (
        ErrorKind.SERVER_ERROR,
        re.compile(
            r"\b50[0234]\b|internal server error|service unavailable|bad gateway"
        ),
    ),
    (
        ErrorKind.CLIENT_ERROR,
        re.compile(
            r"\b40[0134]\b|\b422\b|bad request|unauthorized|forbidden|not found|validation"
        ),
    ),
    (
        ErrorKind.PERMANENT,
        re.compile(r"invalid|malformed|unsupported"),
    ),
    (
        ErrorKind.TRANSIENT,
        re.compile(r"temporar(y|ily)|try again"),
    ),
]

_RETRY_AFTER_PATTERN = re.compile(r"retry[- ]?after[:\s]+(\d+(?:\.\d+)?)", re.IGNORECASE)
_SECONDS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*seconds?", re.IGNORECASE)


def classify_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code.

    Args:
        status_code: HTTP status code

    Returns:
        ErrorKind for the status
    """
    if status_code in _STATUS_MAPPING:
        return _STATUS_MAPPING[status_code]
    if 500 <= status_code < 600:
        return ErrorKind.SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorKind.CLIENT_ERROR
    return ErrorKind.UNKNOWN


def _status_code_of(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify a failure into an ErrorKind.

    Never raises; anything unrecognised is ``ErrorKind.UNKNOWN``.

    Args:
        error: The exception to classify

    Returns:
        ErrorKind representing the failure
    """
    explicit = getattr(error, "error_kind", None)
    if isinstance(explicit, ErrorKind):
        return explicit

    type_name = type(error).__name__.lower()
    if isinstance(error, TimeoutError) or "timeout" in type_name:
        return ErrorKind.TIMEOUT

    status = _status_code_of(error)
    if status is not None:
        return classify_status(status)

    if isinstance(error, (ConnectionError, socket.gaierror)):
        return ErrorKind.NETWORK
    if isinstance(error, OSError) and error.errno is not None:
        if error.errno == errno.ETIMEDOUT:
            return ErrorKind.TIMEOUT
        if error.errno in _NETWORK_ERRNOS:
            return ErrorKind.NETWORK

    message = str(error).lower()
    for kind, pattern in _MESSAGE_RULES:
        if pattern.search(message):
            return kind

    return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    """Check if an error kind is retried by default.

    Args:
        kind: The error kind to check

    Returns:
        True if the kind is in the default retryable set
    """
    return kind in DEFAULT_RETRYABLE_KINDS


def extract_retry_after(error: BaseException) -> float | None:
    """Extract a server-provided retry delay from an error.

    Looks at a ``retry_after`` attribute first, then at "retry after N" and
    "N seconds" phrases in the message.

    Args:
        error: The exception

    Returns:
        Delay in seconds, or None when no hint is present
    """
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and retry_after > 0:
        return float(retry_after)

    message = str(error)
    match = _RETRY_AFTER_PATTERN.search(message) or _SECONDS_PATTERN.search(message)
    if match:
        return float(match.group(1))
    return None
