# src/config/settings.py — v1
"""Typed configuration loaded from .env and SORODEPLOY_* env vars via pydantic-settings.

Single source of truth for CLI paths, network selection, batch defaults,
resilience policies and logging.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sorodeploy.core.errors import SorodeployError
from sorodeploy.resilience.models import (
    BreakerPolicy,
    RateLimitPolicy,
    RetryPolicy,
    RpcEndpoint,
)


class ConfigurationError(SorodeployError):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file and environment."""

    model_config = SettingsConfigDict(
        env_prefix="SORODEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Deploy tool ===
    cli_path: str = "stellar"
    network: str = "testnet"
    source: str = "dev"
    build_timeout_s: float = Field(default=120, gt=0)
    deploy_timeout_s: float = Field(default=60, gt=0)

    # === Batch ===
    batch_mode: Literal["sequential", "parallel"] = "sequential"
    batch_concurrency: int = Field(default=3, ge=1, le=10)

    # === Retry / circuit breaker ===
    retry_enabled: bool = True
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_ms: float = Field(default=1000, ge=0)
    retry_max_delay_ms: float = Field(default=30000, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter: bool = True
    retry_attempt_timeout_ms: float | None = None
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout_ms: float = Field(default=30000, ge=0)

    # === Rate limiting ===
    rate_limit_max_retries: int = Field(default=3, ge=0)
    rate_limit_initial_backoff_ms: float = Field(default=1000, ge=0)
    rate_limit_max_backoff_ms: float = Field(default=30000, ge=0)

    # === RPC ===
    # Comma-separated `url` or `url|priority`; empty deploys by network name.
    rpc_endpoints: str = ""
    rpc_timeout_s: float = Field(default=10, gt=0)

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: str | None = None
    log_rotation: str = "10MB"
    log_retention: int = 5

    # --- Validators ---

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Cross-field consistency rules."""
        errors: list[str] = []

        if self.retry_max_delay_ms < self.retry_initial_delay_ms:
            errors.append("RETRY_MAX_DELAY_MS must be >= RETRY_INITIAL_DELAY_MS")

        if self.rate_limit_max_backoff_ms < self.rate_limit_initial_backoff_ms:
            errors.append(
                "RATE_LIMIT_MAX_BACKOFF_MS must be >= RATE_LIMIT_INITIAL_BACKOFF_MS"
            )

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts if self.retry_enabled else 1,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            jitter=self.retry_jitter,
            attempt_timeout_ms=self.retry_attempt_timeout_ms,
        )

    def breaker_policy(self) -> BreakerPolicy:
        return BreakerPolicy(
            consecutive_failures_threshold=self.breaker_failure_threshold,
            reset_timeout_ms=self.breaker_reset_timeout_ms,
        )

    def rate_limit_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            max_retries=self.rate_limit_max_retries,
            initial_backoff_ms=self.rate_limit_initial_backoff_ms,
            max_backoff_ms=self.rate_limit_max_backoff_ms,
        )

    @property
    def rpc_endpoint_list(self) -> list[RpcEndpoint]:
        """Parse comma-separated `url` or `url|priority` entries.

        Entries without a priority get their list position.

        Raises:
            ConfigurationError: If a priority is not an integer.
        """
        endpoints: list[RpcEndpoint] = []
        for position, raw in enumerate(e.strip() for e in self.rpc_endpoints.split(",")):
            if not raw:
                continue
            url, _, priority = raw.partition("|")
            try:
                rank = int(priority) if priority.strip() else position
            except ValueError as exc:
                raise ConfigurationError(
                    f"Invalid priority in RPC endpoint entry {raw!r}"
                ) from exc
            endpoints.append(RpcEndpoint(url=url, priority=rank))
        return endpoints


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (CLI flags, tests).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
