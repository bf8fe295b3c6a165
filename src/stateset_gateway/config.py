"""
Gateway settings.

Pydantic models for every configurable component, loadable from
environment variables or a YAML file. Each section converts to the
dataclass configuration its component takes.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from stateset_gateway.batch.processor import BatchConfig
from stateset_gateway.cache.adaptive import CacheConfig
from stateset_gateway.errors import DEFAULT_RETRYABLE_KINDS, ConfigurationError, ErrorKind
from stateset_gateway.resilience.rate_limiter import RateLimiterConfig
from stateset_gateway.resilience.retry import RetryConfig
from stateset_gateway.resilience.strategies import Strategy
from stateset_gateway.telemetry.logger import LogFormat, LogLevel

if TYPE_CHECKING:
    from collections.abc import Mapping


class ApiSettings(BaseModel):
    """Remote API connection settings."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(default="http://localhost:8080/api/v1", description="API base URL")
    api_key: str | None = Field(default=None, description="Bearer token", repr=False)
    api_version: str = Field(default="v1", description="Sent as X-API-Version")
    timeout: float = Field(default=10.0, gt=0, description="Request timeout in seconds")


class RateLimitSettings(BaseModel):
    """Rate limiter settings."""

    model_config = ConfigDict(extra="forbid")

    strategy: Strategy = Field(default=Strategy.TOKEN_BUCKET)
    requests_per_minute: float = Field(default=50, gt=0)
    burst_size: float = Field(default=10, gt=0)
    target_response_ms: float = Field(default=1000, gt=0)
    adjustment_factor: float = Field(default=0.1, gt=0, lt=1)
    retry_attempts: int = Field(default=3, ge=0, le=5)
    retry_delay_ms: float = Field(default=1000, ge=0)
    default_timeout: float | None = Field(default=None, gt=0)

    def to_rate_limiter_config(self) -> RateLimiterConfig:
        return RateLimiterConfig.from_rpm(
            self.requests_per_minute,
            burst_size=self.burst_size,
            strategy=self.strategy,
            target_response_ms=self.target_response_ms,
            adjustment_factor=self.adjustment_factor,
            retry_attempts=self.retry_attempts,
            retry_delay_ms=self.retry_delay_ms,
            default_timeout=self.default_timeout,
        )


class RetrySettings(BaseModel):
    """Retry engine settings."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_factor: float = Field(default=0.2, ge=0, le=1)
    retry_unknown: bool = Field(default=True, description="Retry unclassified failures")

    def to_retry_config(self, operation_name: str = "unknown") -> RetryConfig:
        kinds = DEFAULT_RETRYABLE_KINDS
        if not self.retry_unknown:
            kinds = kinds - {ErrorKind.UNKNOWN}
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_factor=self.jitter_factor,
            retryable_kinds=kinds,
            operation_name=operation_name,
        )


class CacheSettings(BaseModel):
    """Adaptive cache settings (seconds)."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    ttl: float = Field(default=300, gt=0, description="Base TTL")
    min_ttl: float = Field(default=30, gt=0)
    max_ttl: float = Field(default=3600, gt=0)
    max_size: int = Field(default=1000, ge=1)
    adaptive_ttl: bool = True
    cleanup_interval: float = Field(default=60, gt=0)

    def to_cache_config(self) -> CacheConfig:
        return CacheConfig(
            base_ttl=self.ttl,
            min_ttl=min(self.min_ttl, self.ttl),
            max_ttl=max(self.max_ttl, self.ttl),
            max_size=self.max_size,
            adaptive_ttl=self.adaptive_ttl,
            cleanup_interval=self.cleanup_interval,
        )


class BatchSettings(BaseModel):
    """Default batch processor settings."""

    model_config = ConfigDict(extra="forbid")

    max_batch_size: int = Field(default=100, ge=1)
    max_wait_ms: float = Field(default=1000, ge=0)
    max_concurrency: int = Field(default=5, ge=1)
    default_timeout: float | None = Field(default=30.0, gt=0)
    default_max_retries: int = Field(default=3, ge=0)
    enable_prioritization: bool = True

    def to_batch_config(self) -> BatchConfig:
        return BatchConfig(
            max_batch_size=self.max_batch_size,
            max_wait_ms=self.max_wait_ms,
            max_concurrency=self.max_concurrency,
            default_timeout=self.default_timeout,
            default_max_retries=self.default_max_retries,
            enable_prioritization=self.enable_prioritization,
        )


class LoggingSettings(BaseModel):
    """Log output settings."""

    model_config = ConfigDict(extra="forbid")

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            return {"WARN": "WARNING", "TRACE": "DEBUG", "FATAL": "CRITICAL"}.get(value, value)
        return value

    @field_validator("format", mode="before")
    @classmethod
    def _normalize_format(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class GatewaySettings(BaseModel):
    """Complete gateway settings.

    Example:
        >>> settings = GatewaySettings.from_env()
        >>> settings.rate_limit.to_rate_limiter_config()
    """

    model_config = ConfigDict(extra="forbid")

    api: ApiSettings = Field(default_factory=ApiSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GatewaySettings:
        """Validate settings from a nested mapping.

        Raises:
            ConfigurationError: If any field is invalid
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise _configuration_error(e) from e

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewaySettings:
        """Load settings from environment variables.

        Unset variables keep their defaults.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Returns:
            Validated settings
        """
        env = os.environ if environ is None else environ
        data: dict[str, dict[str, Any]] = {}

        for var, (section, key) in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            data.setdefault(section, {})[key] = raw.strip()

        timeout_ms = env.get("API_TIMEOUT_MS")
        if timeout_ms:
            try:
                data.setdefault("api", {})["timeout"] = float(timeout_ms) / 1000.0
            except ValueError:
                raise ConfigurationError(
                    f"API_TIMEOUT_MS must be a number, got {timeout_ms!r}",
                    fields=["api.timeout"],
                ) from None

        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> GatewaySettings:
        """Load settings from a YAML file with the same nested structure.

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        return cls.from_dict(data)

    def to_rate_limiter_config(self) -> RateLimiterConfig:
        return self.rate_limit.to_rate_limiter_config()

    def to_retry_config(self, operation_name: str = "unknown") -> RetryConfig:
        return self.retry.to_retry_config(operation_name)

    def to_cache_config(self) -> CacheConfig:
        return self.cache.to_cache_config()

    def to_batch_config(self) -> BatchConfig:
        return self.batch.to_batch_config()


_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "STATESET_API_KEY": ("api", "api_key"),
    "STATESET_BASE_URL": ("api", "base_url"),
    "STATESET_API_VERSION": ("api", "api_version"),
    "REQUESTS_PER_MINUTE": ("rate_limit", "requests_per_minute"),
    "BURST_SIZE": ("rate_limit", "burst_size"),
    "RATE_LIMIT_STRATEGY": ("rate_limit", "strategy"),
    "RETRY_ATTEMPTS": ("retry", "max_retries"),
    "RETRY_DELAY": ("retry", "base_delay_ms"),
    "CACHE_ENABLED": ("cache", "enabled"),
    "CACHE_TTL": ("cache", "ttl"),
    "CACHE_MAX_SIZE": ("cache", "max_size"),
    "BATCH_MAX_SIZE": ("batch", "max_batch_size"),
    "BATCH_MAX_WAIT_MS": ("batch", "max_wait_ms"),
    "BATCH_MAX_CONCURRENCY": ("batch", "max_concurrency"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
}


def _configuration_error(error: ValidationError) -> ConfigurationError:
    fields: list[str] = []
    problems: list[str] = []
    for detail in error.errors():
        name = ".".join(str(part) for part in detail["loc"])
        fields.append(name)
        problems.append(f"{name}: {detail['msg']}")
    return ConfigurationError("Invalid gateway settings: " + "; ".join(problems), fields=fields)
