# src/resilience/circuit_breaker.py — v1
"""Retry / circuit-breaker service keyed by endpoint+operation.

Each key owns a CircuitState guarded by its own asyncio.Lock. The lock
covers state read-modify-write only and is never held across the wrapped
call, so concurrent calls on different keys never block each other.

State machine per key:
  closed    --threshold consecutive failures-->  open
  open      --reset timeout elapsed, next call--> half_open (single trial)
  half_open --trial succeeds--> closed (counter reset)
  half_open --trial fails-->    open (timeout restarts)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.resilience.models import (
    AttemptRecord,
    BreakerPolicy,
    CircuitState,
    CircuitStatus,
    ErrorClass,
    RetryEvent,
    RetryPolicy,
    RetryResult,
    RetryStatus,
)
from sorodeploy.resilience.retry import classify_error, compute_delay_ms

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100

StatusListener = Callable[[RetryEvent], None]


class CircuitBreakerService:
    """Bounded retries plus per-key failure isolation.

    Args:
        retry_policy: Default retry policy for calls that do not pass one.
        breaker_policy: Default breaker policy for calls that do not pass one.
        clock: Monotonic clock in seconds (injectable for tests).
        history_size: Number of finished results kept in history.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        breaker_policy: BreakerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._breaker_policy = breaker_policy or BreakerPolicy()
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[StatusListener] = []
        self._history: deque[RetryResult] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_with_retry(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        retry_policy: RetryPolicy | None = None,
        breaker_policy: BreakerPolicy | None = None,
        token: CancellationToken | None = None,
    ) -> RetryResult:
        """Run fn with retries, failing fast while the key's circuit is open.

        Only transient errors are retried. Permanent errors stop the session
        immediately but still count toward the breaker's failure tally.

        Returns:
            RetryResult describing the final outcome. Never raises for fn
            failures; asyncio.CancelledError is propagated.
        """
        retry = retry_policy or self._retry_policy
        breaker = breaker_policy or self._breaker_policy
        result = RetryResult(key=key, success=False)

        for attempt in range(1, retry.max_attempts + 1):
            if token is not None and token.is_cancellation_requested:
                return self._finish_cancelled(result, attempt, retry)

            if not await self._acquire(key, breaker):
                result.circuit_open = True
                if result.last_error is None:
                    result.last_error = f"Circuit open for '{key}'"
                self._emit(RetryEvent(
                    key=key,
                    status=RetryStatus.CIRCUIT_OPEN,
                    attempt=attempt,
                    max_attempts=retry.max_attempts,
                    last_error=result.last_error,
                    message=f"Circuit open for '{key}', call rejected",
                ))
                return self._finish(result)

            self._emit(RetryEvent(
                key=key,
                status=RetryStatus.RUNNING,
                attempt=attempt,
                max_attempts=retry.max_attempts,
                last_error=result.last_error,
                message=f"Attempt {attempt} of {retry.max_attempts}",
            ))

            started_at = datetime.now(timezone.utc)
            t0 = time.monotonic()
            try:
                value = await self._invoke(fn, retry)
            except asyncio.CancelledError:
                await self._release_trial(key)
                raise
            except Exception as exc:
                error_class = classify_error(exc)
                await self._record_failure(key, breaker)

                record = AttemptRecord(
                    attempt=attempt,
                    started_at=started_at,
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    success=False,
                    error=_describe(exc),
                    error_class=error_class,
                )
                result.attempt_records.append(record)
                result.attempts = attempt
                result.last_error = record.error
                result.last_exception = exc
                result.error_class = error_class

                if error_class is ErrorClass.PERMANENT or attempt >= retry.max_attempts:
                    logger.warning(
                        "'%s' failed after %d attempt(s) (%s): %s",
                        key, attempt, error_class.value, record.error,
                    )
                    self._emit(RetryEvent(
                        key=key,
                        status=RetryStatus.FAILED,
                        attempt=attempt,
                        max_attempts=retry.max_attempts,
                        last_error=record.error,
                        message=f"Failed after {attempt} attempt(s): {record.error}",
                    ))
                    return self._finish(result)

                delay_ms = compute_delay_ms(retry, attempt)
                record.next_retry_delay_ms = int(delay_ms)
                logger.warning(
                    "'%s' — %s (attempt %d/%d), retrying in %.0fms",
                    key, record.error, attempt, retry.max_attempts, delay_ms,
                )
                self._emit(RetryEvent(
                    key=key,
                    status=RetryStatus.WAITING,
                    attempt=attempt,
                    max_attempts=retry.max_attempts,
                    next_retry_in_ms=int(delay_ms),
                    last_error=record.error,
                    message=f"Attempt {attempt} failed, retrying in {delay_ms / 1000:.1f}s",
                ))
                if await self._wait(delay_ms, token):
                    return self._finish_cancelled(result, attempt + 1, retry)
                continue

            await self._record_success(key)
            result.attempt_records.append(AttemptRecord(
                attempt=attempt,
                started_at=started_at,
                duration_ms=int((time.monotonic() - t0) * 1000),
                success=True,
            ))
            result.success = True
            result.value = value
            result.attempts = attempt
            result.error_class = None
            self._emit(RetryEvent(
                key=key,
                status=RetryStatus.SUCCEEDED,
                attempt=attempt,
                max_attempts=retry.max_attempts,
                message=f"Succeeded on attempt {attempt} of {retry.max_attempts}",
            ))
            return self._finish(result)

        return self._finish(result)

    def get_state(self, key: str) -> CircuitState:
        """Return a copy of the key's circuit state (closed if unseen)."""
        state = self._states.get(key)
        return state.model_copy() if state is not None else CircuitState()

    def reset(self, key: str | None = None) -> None:
        """Forget breaker state for one key, or for all keys."""
        if key is None:
            self._states.clear()
        else:
            self._states.pop(key, None)

    @property
    def history(self) -> list[RetryResult]:
        """Finished results, most recent first."""
        return list(reversed(self._history))

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Register a RetryEvent listener. Returns a disposer."""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    # ------------------------------------------------------------------
    # State transitions (per-key lock)
    # ------------------------------------------------------------------

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _acquire(self, key: str, policy: BreakerPolicy) -> bool:
        """Decide whether a call on key may proceed."""
        async with self._lock(key):
            state = self._states.setdefault(key, CircuitState())
            if state.state is CircuitStatus.CLOSED:
                return True
            if state.state is CircuitStatus.OPEN:
                elapsed_ms = (self._clock() - (state.opened_at or 0.0)) * 1000
                if elapsed_ms < policy.reset_timeout_ms:
                    return False
                state.state = CircuitStatus.HALF_OPEN
                state.trial_in_flight = True
                logger.info("Circuit '%s' half-open: allowing trial call", key)
                return True
            if state.trial_in_flight:
                return False
            state.trial_in_flight = True
            return True

    async def _record_success(self, key: str) -> None:
        async with self._lock(key):
            state = self._states.setdefault(key, CircuitState())
            if state.state is not CircuitStatus.CLOSED:
                logger.info("Circuit '%s' closed", key)
            state.state = CircuitStatus.CLOSED
            state.consecutive_failures = 0
            state.opened_at = None
            state.trial_in_flight = False

    async def _record_failure(self, key: str, policy: BreakerPolicy) -> None:
        async with self._lock(key):
            state = self._states.setdefault(key, CircuitState())
            state.consecutive_failures += 1
            state.trial_in_flight = False
            if (
                state.state is CircuitStatus.HALF_OPEN
                or state.consecutive_failures >= policy.consecutive_failures_threshold
            ):
                if state.state is not CircuitStatus.OPEN:
                    logger.warning(
                        "Circuit '%s' opened after %d consecutive failure(s)",
                        key, state.consecutive_failures,
                    )
                state.state = CircuitStatus.OPEN
                state.opened_at = self._clock()

    async def _release_trial(self, key: str) -> None:
        async with self._lock(key):
            state = self._states.get(key)
            if state is not None:
                state.trial_in_flight = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _invoke(fn: Callable[[], Awaitable[Any]], policy: RetryPolicy) -> Any:
        if policy.attempt_timeout_ms is None:
            return await fn()
        return await asyncio.wait_for(fn(), timeout=policy.attempt_timeout_ms / 1000)

    @staticmethod
    async def _wait(delay_ms: float, token: CancellationToken | None) -> bool:
        """Back off for delay_ms. Returns True if cancelled meanwhile."""
        if token is not None:
            return await token.sleep(delay_ms / 1000)
        await asyncio.sleep(delay_ms / 1000)
        return False

    def _finish_cancelled(
        self, result: RetryResult, attempt: int, policy: RetryPolicy,
    ) -> RetryResult:
        result.cancelled = True
        result.error_class = ErrorClass.CANCELLED
        self._emit(RetryEvent(
            key=result.key,
            status=RetryStatus.CANCELLED,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            last_error=result.last_error,
            message=f"Cancelled after {result.attempts} attempt(s)",
        ))
        return self._finish(result)

    def _finish(self, result: RetryResult) -> RetryResult:
        self._history.append(result)
        return result

    def _emit(self, event: RetryEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Retry status listener raised")


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__
