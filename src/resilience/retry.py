# src/resilience/retry.py — v1
"""Error classification and exponential backoff computation.

Shared by the circuit breaker service and the resilient deployer.
"""

from __future__ import annotations

import asyncio
import random

from sorodeploy.core.errors import PermanentError, TransientError
from sorodeploy.resilience.models import ErrorClass, RetryPolicy

JITTER_RATIO = 0.15

_PERMANENT_MARKERS = (
    "unauthorized",
    "forbidden",
    "invalid",
    "not found",
    "validation",
    "400",
    "401",
    "403",
    "404",
)

_TRANSIENT_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "etimedout",
    "socket",
    "connection",
    "unavailable",
    "rate limit",
    "429",
    "502",
    "503",
    "504",
)


def classify_message(message: str) -> ErrorClass:
    """Classify an error message into transient or permanent.

    Permanent markers win over transient ones. Unknown errors are treated
    as transient: better to retry than give up.
    """
    lower = message.lower()
    if any(marker in lower for marker in _PERMANENT_MARKERS):
        return ErrorClass.PERMANENT
    if any(marker in lower for marker in _TRANSIENT_MARKERS):
        return ErrorClass.TRANSIENT
    return ErrorClass.TRANSIENT


def classify_error(error: BaseException) -> ErrorClass:
    """Classify an exception into transient or permanent."""
    if isinstance(error, asyncio.CancelledError):
        return ErrorClass.CANCELLED
    if isinstance(error, PermanentError):
        return ErrorClass.PERMANENT
    if isinstance(error, TransientError):
        return ErrorClass.TRANSIENT
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorClass.PERMANENT
    return classify_message(f"{type(error).__name__}: {error}")


def compute_delay_ms(policy: RetryPolicy, attempt: int) -> float:
    """Delay after a failed 1-based attempt.

    delay = initial * multiplier^(attempt - 1), capped at max_delay_ms,
    then perturbed by ±15% when jitter is enabled.
    """
    delay = policy.initial_delay_ms * (policy.backoff_multiplier ** (attempt - 1))
    delay = min(delay, policy.max_delay_ms)
    if policy.jitter and delay > 0:
        spread = delay * JITTER_RATIO
        delay += random.uniform(-spread, spread)  # noqa: S311
        delay = max(0.0, delay)
    return delay
