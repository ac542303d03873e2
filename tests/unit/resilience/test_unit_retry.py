# tests/unit/resilience/test_unit_retry.py — v1
"""Tests for resilience/retry.py — error classification and backoff delays."""

from __future__ import annotations

import asyncio

import pytest

from sorodeploy.core.errors import PermanentError, ThrottledError, TransientError
from sorodeploy.resilience.models import ErrorClass, RetryPolicy
from sorodeploy.resilience.retry import (
    JITTER_RATIO,
    classify_error,
    classify_message,
    compute_delay_ms,
)


class TestClassifyMessage:
    @pytest.mark.parametrize("message", [
        "401 Unauthorized",
        "Forbidden: key revoked",
        "invalid wasm header",
        "account not found",
        "Validation failed",
        "HTTP 404",
    ])
    def test_permanent(self, message):
        assert classify_message(message) is ErrorClass.PERMANENT

    @pytest.mark.parametrize("message", [
        "network unreachable",
        "request timed out",
        "ECONNREFUSED",
        "503 Service Unavailable",
        "rate limit exceeded (429)",
        "socket hang up",
    ])
    def test_transient(self, message):
        assert classify_message(message) is ErrorClass.TRANSIENT

    def test_permanent_marker_wins(self):
        assert classify_message("invalid response from network") is ErrorClass.PERMANENT

    def test_unknown_defaults_to_transient(self):
        assert classify_message("something odd happened") is ErrorClass.TRANSIENT


class TestClassifyError:
    def test_by_type(self):
        assert classify_error(PermanentError("whatever")) is ErrorClass.PERMANENT
        assert classify_error(TransientError("invalid")) is ErrorClass.TRANSIENT
        assert classify_error(ThrottledError()) is ErrorClass.TRANSIENT

    def test_builtin_types(self):
        assert classify_error(TimeoutError()) is ErrorClass.TRANSIENT
        assert classify_error(ConnectionResetError()) is ErrorClass.TRANSIENT
        assert classify_error(ValueError("bad")) is ErrorClass.PERMANENT
        assert classify_error(KeyError("k")) is ErrorClass.PERMANENT

    def test_cancelled(self):
        assert classify_error(asyncio.CancelledError()) is ErrorClass.CANCELLED

    def test_falls_back_to_message(self):
        assert classify_error(RuntimeError("403 from server")) is ErrorClass.PERMANENT
        assert classify_error(RuntimeError("flaky")) is ErrorClass.TRANSIENT


class TestComputeDelay:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=30000, jitter=False)
        assert [compute_delay_ms(policy, n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_capped(self):
        policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=3000, jitter=False)
        assert compute_delay_ms(policy, 5) == 3000

    def test_jitter_within_bounds(self):
        policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=30000, jitter=True)
        for _ in range(50):
            delay = compute_delay_ms(policy, 2)
            assert 2000 * (1 - JITTER_RATIO) <= delay <= 2000 * (1 + JITTER_RATIO)

    def test_zero_delay(self):
        policy = RetryPolicy(initial_delay_ms=0, max_delay_ms=0)
        assert compute_delay_ms(policy, 3) == 0


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay_ms == 1000
        assert policy.max_delay_ms == 30000
        assert policy.backoff_multiplier == 2.0

    def test_max_below_initial_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(initial_delay_ms=5000, max_delay_ms=1000)

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
