"""错误体系：提供网关统一的错误类型与错误分类。

Error hierarchy for stateset-gateway.

Provides structured error types and the error-kind taxonomy used by the
retry engine, rate limiter and batch processor.
"""

from stateset_gateway.errors.base import (
    ConfigurationError,
    ErrorContext,
    GatewayError,
    OperationTimeoutError,
    QueueClearedError,
    QueueRejectedError,
    RemoteError,
    RetryExhaustedError,
    ShutdownError,
    TransportError,
    extract_error_message,
)
from stateset_gateway.errors.classification import (
    DEFAULT_RETRYABLE_KINDS,
    ErrorKind,
    classify_error,
    classify_status,
    extract_retry_after,
    is_retryable,
)

__all__ = [
    # Classification
    "DEFAULT_RETRYABLE_KINDS",
    # Base errors
    "ConfigurationError",
    "ErrorContext",
    "ErrorKind",
    "GatewayError",
    "OperationTimeoutError",
    "QueueClearedError",
    "QueueRejectedError",
    "RemoteError",
    "RetryExhaustedError",
    "ShutdownError",
    "TransportError",
    "classify_error",
    "classify_status",
    "extract_error_message",
    "extract_retry_after",
    "is_retryable",
]
