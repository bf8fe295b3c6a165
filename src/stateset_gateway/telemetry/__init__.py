"""
Telemetry module for stateset-gateway.

Provides structured logging and a labelled metrics registry.
"""

from stateset_gateway.telemetry.logger import (
    GatewayLogger,
    JsonFormatter,
    LogContext,
    LogFormat,
    LogLevel,
    SensitiveDataMasker,
    TextFormatter,
    clear_log_context,
    get_log_context,
    get_logger,
    log_context,
    set_log_context,
)
from stateset_gateway.telemetry.metrics import (
    HistogramBuckets,
    HistogramSnapshot,
    MetricsCollector,
    MetricType,
)

__all__ = [
    # Logger
    "GatewayLogger",
    # Metrics
    "HistogramBuckets",
    "HistogramSnapshot",
    "JsonFormatter",
    "LogContext",
    "LogFormat",
    "LogLevel",
    "MetricType",
    "MetricsCollector",
    "SensitiveDataMasker",
    "TextFormatter",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_context",
    "set_log_context",
]
