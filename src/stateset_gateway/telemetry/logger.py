"""
Structured logging for stateset-gateway.

Provides context-aware logging with sensitive data masking. Components log
under ``stateset_gateway.<component>`` and pass structured fields as keyword
arguments.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterator

# Request-scoped logging context
_log_context: ContextVar[dict[str, Any] | None] = ContextVar("gateway_log_context", default=None)

REDACTED = "***REDACTED***"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def to_logging_level(self) -> int:
        """Convert to standard logging level."""
        return getattr(logging, self.value)


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


@dataclass
class LogContext:
    """Request-scoped logging context.

    Attributes:
        request_id: Identifier of the inbound request
        operation: Gateway operation being served
        correlation_id: Identifier shared across related requests
        extra: Additional context fields
    """

    request_id: str | None = None
    operation: str | None = None
    correlation_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        if self.request_id:
            result["request_id"] = self.request_id
        if self.operation:
            result["operation"] = self.operation
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        result.update(self.extra)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogContext:
        """Rebuild a context from its dictionary form."""
        extra = {
            k: v
            for k, v in data.items()
            if k not in ("request_id", "operation", "correlation_id")
        }
        return cls(
            request_id=data.get("request_id"),
            operation=data.get("operation"),
            correlation_id=data.get("correlation_id"),
            extra=extra,
        )

    def with_extra(self, **kwargs: Any) -> LogContext:
        """Create new context with additional fields."""
        return LogContext(
            request_id=self.request_id,
            operation=self.operation,
            correlation_id=self.correlation_id,
            extra={**self.extra, **kwargs},
        )


def get_log_context() -> LogContext:
    """Get current logging context."""
    data = _log_context.get()
    return LogContext.from_dict(data) if data else LogContext()


def set_log_context(context: LogContext) -> None:
    """Set logging context for current async context."""
    _log_context.set(context.to_dict())


def clear_log_context() -> None:
    """Clear logging context."""
    _log_context.set(None)


@contextmanager
def log_context(**fields: Any) -> Iterator[LogContext]:
    """Temporarily merge fields into the logging context.

    Example:
        >>> with log_context(request_id="req-1", operation="list_orders"):
        ...     logger.info("Serving request")
    """
    current = get_log_context()
    known = {k: fields.pop(k) for k in ("request_id", "operation", "correlation_id") if k in fields}
    merged = LogContext(
        request_id=known.get("request_id", current.request_id),
        operation=known.get("operation", current.operation),
        correlation_id=known.get("correlation_id", current.correlation_id),
        extra={**current.extra, **fields},
    )
    token = _log_context.set(merged.to_dict())
    try:
        yield merged
    finally:
        _log_context.reset(token)


class SensitiveDataMasker:
    """Masks credentials in log messages and structured fields."""

    DEFAULT_PATTERNS: ClassVar[list[tuple[str, str]]] = [
        # StateSet API keys
        (r"(sk_(?:live|test)_[a-zA-Z0-9]{8,})", REDACTED),
        (r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)([^\"'\s,}]+)", r"\1" + REDACTED),
        # Bearer tokens
        (r"(Bearer\s+)([^\s\"']+)", r"\1" + REDACTED),
        # Authorization headers
        (r"(Authorization[\"']?\s*[:=]\s*[\"']?)(?!Bearer\b)([^\"'\s,}]+)", r"\1" + REDACTED),
        # Environment variables
        (r"(STATESET_API_KEY=)([^\s]+)", r"\1" + REDACTED),
    ]

    SENSITIVE_KEYS: ClassVar[tuple[str, ...]] = (
        "api_key",
        "apikey",
        "token",
        "secret",
        "password",
        "authorization",
    )

    def __init__(self, patterns: list[tuple[str, str]] | None = None) -> None:
        """Initialize masker with patterns.

        Args:
            patterns: List of (pattern, replacement) tuples
        """
        self._patterns = [
            (re.compile(p, re.IGNORECASE), r)
            for p, r in (patterns or self.DEFAULT_PATTERNS)
        ]

    def mask(self, text: str) -> str:
        """Mask sensitive data in text.

        Args:
            text: Text to mask

        Returns:
            Masked text
        """
        result = text
        for pattern, replacement in self._patterns:
            result = pattern.sub(replacement, result)
        return result

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Mask sensitive data in a dictionary, recursing into nested values.

        Args:
            data: Dictionary to mask

        Returns:
            Masked copy
        """
        result: dict[str, Any] = {}
        for key, value in data.items():
            if any(s in key.lower() for s in self.SENSITIVE_KEYS):
                result[key] = REDACTED
            elif isinstance(value, str):
                result[key] = self.mask(value)
            elif isinstance(value, dict):
                result[key] = self.mask_dict(value)
            elif isinstance(value, list):
                result[key] = [self.mask_dict(v) if isinstance(v, dict) else v for v in value]
            else:
                result[key] = value
        return result


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_timestamp: bool = True,
    ) -> None:
        super().__init__()
        self._masker = masker or SensitiveDataMasker()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": self._masker.mask(record.getMessage()),
        }

        if self._include_timestamp:
            log_data["timestamp"] = (
                time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
                + f".{int(record.msecs):03d}Z"
            )

        if context_dict := get_log_context().to_dict():
            log_data["context"] = self._masker.mask_dict(context_dict)

        if hasattr(record, "extra_fields"):
            log_data.update(self._masker.mask_dict(record.extra_fields))

        if record.exc_info:
            log_data["exception"] = self._masker.mask(self.formatException(record.exc_info))

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_context: bool = True,
    ) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._masker = masker or SensitiveDataMasker()
        self._include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as text."""
        original_msg, original_args = record.msg, record.args
        record.msg = self._masker.mask(record.getMessage())
        record.args = None
        try:
            result = super().format(record)
        finally:
            record.msg, record.args = original_msg, original_args

        fields: dict[str, Any] = {}
        if self._include_context:
            fields.update(get_log_context().to_dict())
        if hasattr(record, "extra_fields"):
            fields.update(record.extra_fields)
        if fields:
            masked = self._masker.mask_dict(fields)
            result = f"{result} | " + " ".join(f"{k}={v}" for k, v in masked.items())

        return result


class GatewayLogger:
    """Logger wrapper with keyword structured fields.

    Example:
        >>> logger = GatewayLogger.get_logger("stateset_gateway.cache")
        >>> logger.info("Cache entry evicted", key="orders:list", size=1000)
    """

    _loggers: ClassVar[dict[str, logging.Logger]] = {}
    _level: ClassVar[LogLevel] = LogLevel.INFO
    _handler: ClassVar[logging.Handler | None] = None

    @classmethod
    def configure(
        cls,
        level: LogLevel | str = LogLevel.INFO,
        format: LogFormat | str = LogFormat.JSON,
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Configure output for every gateway logger.

        Until this is called, gateway loggers have no handler of their own
        and records propagate to the root logger.

        Args:
            level: Log level
            format: Output format ('json' or 'text')
            stream: Output stream (default: stderr)
            masker: Sensitive data masker
        """
        cls._level = LogLevel(str(level.value if isinstance(level, LogLevel) else level).upper())
        fmt = LogFormat(format)

        formatter: logging.Formatter
        if fmt is LogFormat.JSON:
            formatter = JsonFormatter(masker=masker)
        else:
            formatter = TextFormatter(masker=masker)

        cls._handler = logging.StreamHandler(stream or sys.stderr)
        cls._handler.setFormatter(formatter)
        cls._handler.setLevel(cls._level.to_logging_level())

        for logger in cls._loggers.values():
            cls._attach(logger)

    @classmethod
    def reset(cls) -> None:
        """Drop configured handlers and return to propagation."""
        cls._handler = None
        cls._level = LogLevel.INFO
        for logger in cls._loggers.values():
            logger.handlers.clear()
            logger.propagate = True
            logger.setLevel(logging.NOTSET)

    @classmethod
    def _attach(cls, logger: logging.Logger) -> None:
        logger.handlers.clear()
        if cls._handler is not None:
            logger.addHandler(cls._handler)
            logger.setLevel(cls._level.to_logging_level())
            logger.propagate = False

    @classmethod
    def get_logger(cls, name: str) -> GatewayLogger:
        """Get or create a logger.

        Args:
            name: Logger name

        Returns:
            Logger instance
        """
        if name not in cls._loggers:
            logger = logging.getLogger(name)
            cls._attach(logger)
            cls._loggers[name] = logger

        return cls(cls._loggers[name])

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        extra = {"extra_fields": kwargs} if kwargs else {}
        self._logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, msg, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self._log(logging.ERROR, msg, exc_info=True, **kwargs)


def get_logger(name: str) -> GatewayLogger:
    """Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return GatewayLogger.get_logger(name)
