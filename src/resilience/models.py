# src/resilience/models.py — v1
"""Resilience types: retry/breaker/rate-limit policies, circuit state,
endpoint health, and the results and events the services emit.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ErrorClass(str, Enum):
    """Retryability category of a failed call."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"


class RetryPolicy(BaseModel):
    """Exponential backoff policy for a single execute_with_retry call."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True
    attempt_timeout_ms: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_delays(self) -> RetryPolicy:
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self


class BreakerPolicy(BaseModel):
    """Circuit breaker thresholds for one key."""

    model_config = {"frozen": True}

    consecutive_failures_threshold: int = Field(default=5, ge=1)
    reset_timeout_ms: float = Field(default=30000, ge=0)


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitState(BaseModel):
    """Per-key breaker state. Mutated only by CircuitBreakerService."""

    state: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    trial_in_flight: bool = False


class AttemptRecord(BaseModel):
    """Snapshot of one attempt inside a retry session."""

    attempt: int
    started_at: datetime
    duration_ms: int
    success: bool
    error: str | None = None
    error_class: ErrorClass | None = None
    next_retry_delay_ms: int | None = None


class RetryResult(BaseModel):
    """Outcome of execute_with_retry."""

    key: str
    success: bool
    value: Any = None
    attempts: int = 0
    last_error: str | None = None
    last_exception: Any = Field(default=None, exclude=True)
    error_class: ErrorClass | None = None
    circuit_open: bool = False
    cancelled: bool = False
    attempt_records: list[AttemptRecord] = Field(default_factory=list)


class RetryStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CIRCUIT_OPEN = "circuit_open"


class RetryEvent(BaseModel):
    """Live status update emitted during a retry session."""

    key: str
    status: RetryStatus
    attempt: int
    max_attempts: int
    message: str
    next_retry_in_ms: int | None = None
    last_error: str | None = None


class RateLimitPolicy(BaseModel):
    """Backoff policy for throttled calls."""

    model_config = {"frozen": True}

    max_retries: int = Field(default=3, ge=0)
    initial_backoff_ms: float = Field(default=1000, ge=0)
    max_backoff_ms: float = Field(default=30000, ge=0)


class RateLimitStatus(str, Enum):
    HEALTHY = "healthy"
    RATE_LIMITED = "rate_limited"


class RateLimitEvent(BaseModel):
    """Emitted when a key enters or leaves the rate-limited state."""

    status: RateLimitStatus
    endpoint: str
    reset_time: datetime | None = None
    message: str = ""


class EndpointHealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        """Sort rank for candidate ordering (lower is preferred)."""
        return _HEALTH_RANK[self]


_HEALTH_RANK = {
    EndpointHealthStatus.HEALTHY: 0,
    EndpointHealthStatus.DEGRADED: 1,
    EndpointHealthStatus.UNKNOWN: 2,
    EndpointHealthStatus.UNHEALTHY: 3,
}


class EndpointHealth(BaseModel):
    """Health snapshot for one endpoint, owned by a health monitor."""

    url: str
    status: EndpointHealthStatus = EndpointHealthStatus.UNKNOWN
    priority: int = 0
    latency_ms: int | None = None
    checked_at: datetime | None = None
    last_error: str | None = None


def normalize_url(url: str) -> str:
    """Strip surrounding whitespace and trailing slashes."""
    return url.strip().rstrip("/")


class RpcEndpoint(BaseModel):
    """A configured RPC endpoint."""

    model_config = {"frozen": True}

    url: str
    name: str = ""
    priority: int = 0
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = normalize_url(v)
        if not v:
            raise ValueError("Endpoint url must be non-empty")
        return v

    @property
    def label(self) -> str:
        return self.name or self.url


class FallbackResult(BaseModel):
    """Outcome of a FallbackSelector.execute call."""

    success: bool
    value: Any = None
    endpoint: str | None = None
    error: str | None = None
    attempted: list[str] = Field(default_factory=list)
    cancelled: bool = False
