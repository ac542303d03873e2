# src/resilience/rate_limiter.py — v1
"""Rate limiter reacting to throttling signals ("too many requests").

Unlike the circuit breaker, this only reacts to ThrottledError. Each key
(usually an endpoint URL) tracks whether it is currently backing off;
while it is, new calls on that key wait for the reset time before trying.
Entering and leaving the backing-off state emits a RateLimitEvent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

from sorodeploy.core.errors import ThrottledError
from sorodeploy.resilience.models import RateLimitEvent, RateLimitPolicy, RateLimitStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[RateLimitEvent], None]


@dataclass
class _KeyState:
    rate_limited: bool = False
    reset_at: float = 0.0


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RateLimiter:
    """Backs off and retries calls that raise ThrottledError.

    Args:
        policy: Retry/backoff policy.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Async sleep function (injectable for tests).
    """

    def __init__(
        self,
        policy: RateLimitPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._policy = policy or RateLimitPolicy()
        self._clock = clock
        self._sleep = sleep
        self._states: dict[str, _KeyState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[StatusListener] = []

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    def update_policy(self, **changes: Any) -> None:
        """Replace policy fields, e.g. update_policy(max_retries=5)."""
        self._policy = RateLimitPolicy(**{**self._policy.model_dump(), **changes})

    async def execute(self, call: Callable[[], Awaitable[Any]], key: str = "default") -> Any:
        """Run call, retrying with backoff while it is throttled.

        Raises:
            ThrottledError: The original throttling error once max_retries
                retries are exhausted.
            Exception: Any non-throttling error from call, untouched.
        """
        attempt = 0
        while True:
            await self._wait_if_limited(key)
            try:
                result = await call()
            except ThrottledError as exc:
                if attempt >= self._policy.max_retries:
                    logger.warning(
                        "Rate limit on '%s' persisted after %d retries", key, attempt,
                    )
                    raise
                backoff_ms = self._backoff_ms(exc, attempt)
                await self._enter_rate_limited(key, backoff_ms)
                logger.info(
                    "Throttled on '%s' (retry %d/%d), backing off %.0fms",
                    key, attempt + 1, self._policy.max_retries, backoff_ms,
                )
                await self._sleep(backoff_ms / 1000)
                attempt += 1
                continue
            await self._recover_if_due(key)
            return result

    def is_rate_limited(self, key: str = "default") -> bool:
        state = self._states.get(key)
        return state is not None and state.rate_limited

    def remaining_backoff_ms(self, key: str = "default") -> float:
        state = self._states.get(key)
        if state is None or not state.rate_limited:
            return 0.0
        return max(0.0, (state.reset_at - self._clock()) * 1000)

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Register a RateLimitEvent listener. Returns a disposer."""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    # ------------------------------------------------------------------

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _backoff_ms(self, exc: ThrottledError, attempt: int) -> float:
        backoff = self._policy.initial_backoff_ms * (2 ** attempt)
        if exc.retry_after_s is not None:
            backoff = exc.retry_after_s * 1000
        return min(backoff, self._policy.max_backoff_ms)

    async def _wait_if_limited(self, key: str) -> None:
        async with self._lock(key):
            state = self._states.get(key)
            remaining = 0.0
            if state is not None and state.rate_limited:
                remaining = state.reset_at - self._clock()
        if remaining > 0:
            logger.debug("'%s' is rate limited, waiting %.2fs", key, remaining)
            await self._sleep(remaining)

    async def _enter_rate_limited(self, key: str, backoff_ms: float) -> None:
        async with self._lock(key):
            state = self._states.setdefault(key, _KeyState())
            reset_at = self._clock() + backoff_ms / 1000
            if not state.rate_limited or reset_at > state.reset_at:
                state.reset_at = reset_at
            if state.rate_limited:
                return
            state.rate_limited = True
        self._emit(RateLimitEvent(
            status=RateLimitStatus.RATE_LIMITED,
            endpoint=key,
            reset_time=datetime.now(timezone.utc) + timedelta(milliseconds=backoff_ms),
            message=f"Rate limit reached. Backing off for {round(backoff_ms / 1000)}s",
        ))

    async def _recover_if_due(self, key: str) -> None:
        async with self._lock(key):
            state = self._states.get(key)
            if state is None or not state.rate_limited or self._clock() < state.reset_at:
                return
            state.rate_limited = False
        logger.info("Rate limit on '%s' recovered", key)
        self._emit(RateLimitEvent(
            status=RateLimitStatus.HEALTHY,
            endpoint=key,
            message="Rate limit recovered",
        ))

    def _emit(self, event: RateLimitEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Rate limit listener raised")
