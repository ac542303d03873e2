# src/resilience/fallback.py — v1
"""Endpoint fallback selector — route a call to the healthiest endpoint.

Candidates are the enabled endpoints not marked unhealthy, sorted by
(health rank, priority) with healthy < degraded < unknown. Each candidate
is attempted through the circuit breaker service keyed by
"<operation>:<url>", so one bad endpoint cannot starve a healthy one.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.resilience.circuit_breaker import CircuitBreakerService
from sorodeploy.resilience.models import (
    BreakerPolicy,
    EndpointHealth,
    EndpointHealthStatus,
    FallbackResult,
    RetryPolicy,
    RpcEndpoint,
    normalize_url,
)

logger = logging.getLogger(__name__)

NO_CANDIDATES_ERROR = "No healthy RPC endpoints available. Please check your configuration."


class HealthMonitor(Protocol):
    """Read-only view of endpoint health, updated elsewhere."""

    def get_endpoint_health(self, url: str) -> EndpointHealth | None: ...


class FallbackSelector:
    """Try configured endpoints in health/priority order until one succeeds.

    Args:
        health_monitor: Health lookup (never mutated here).
        breaker_service: Retry/circuit-breaker service shared across callers.
        endpoints: Initial endpoint list.
        retry_policy: Retry policy per endpoint attempt.
        breaker_policy: Breaker policy per endpoint key.
    """

    def __init__(
        self,
        health_monitor: HealthMonitor,
        breaker_service: CircuitBreakerService,
        endpoints: Iterable[RpcEndpoint] = (),
        retry_policy: RetryPolicy | None = None,
        breaker_policy: BreakerPolicy | None = None,
    ) -> None:
        self._health = health_monitor
        self._breaker = breaker_service
        self._retry_policy = retry_policy
        self._breaker_policy = breaker_policy
        self._endpoints: list[RpcEndpoint] = []
        self.update_endpoints(endpoints)

    @property
    def endpoints(self) -> list[RpcEndpoint]:
        return list(self._endpoints)

    def update_endpoints(self, endpoints: Iterable[RpcEndpoint]) -> None:
        """Replace the configured endpoint list (URLs are normalized)."""
        self._endpoints = list(endpoints)
        logger.info("Endpoints updated: %d configured", len(self._endpoints))

    def rank_candidates(self) -> list[RpcEndpoint]:
        """Usable endpoints, best first."""
        ranked: list[tuple[int, int, int, RpcEndpoint]] = []
        for position, endpoint in enumerate(self._endpoints):
            if not endpoint.enabled:
                continue
            status = self._status_of(endpoint.url)
            if status is EndpointHealthStatus.UNHEALTHY:
                continue
            ranked.append((status.rank, endpoint.priority, position, endpoint))
        ranked.sort(key=lambda entry: entry[:3])
        return [entry[3] for entry in ranked]

    async def execute(
        self,
        operation: str,
        call: Callable[[RpcEndpoint], Awaitable[Any]],
        token: CancellationToken | None = None,
    ) -> FallbackResult:
        """Run call against candidates in order; first success wins.

        Returns:
            FallbackResult with the value and endpoint on success, or a
            single aggregated failure naming the last error.
        """
        candidates = self.rank_candidates()
        if not candidates:
            logger.error("No usable endpoints for '%s'", operation)
            return FallbackResult(success=False, error=NO_CANDIDATES_ERROR)

        attempted: list[str] = []
        last_error: str | None = None

        for endpoint in candidates:
            if token is not None and token.is_cancellation_requested:
                return FallbackResult(
                    success=False,
                    error="Cancelled",
                    attempted=attempted,
                    cancelled=True,
                )

            attempted.append(endpoint.url)
            logger.info("Attempting '%s' on %s", operation, endpoint.label)

            async def attempt(ep: RpcEndpoint = endpoint) -> Any:
                return await call(ep)

            result = await self._breaker.execute_with_retry(
                f"{operation}:{endpoint.url}",
                attempt,
                retry_policy=self._retry_policy,
                breaker_policy=self._breaker_policy,
                token=token,
            )
            if result.success:
                return FallbackResult(
                    success=True,
                    value=result.value,
                    endpoint=endpoint.url,
                    attempted=attempted,
                )
            if result.cancelled:
                return FallbackResult(
                    success=False,
                    error="Cancelled",
                    attempted=attempted,
                    cancelled=True,
                )

            last_error = result.last_error
            if result.circuit_open:
                logger.warning("Circuit open for %s, trying next endpoint", endpoint.url)
            else:
                logger.warning("Endpoint %s failed: %s", endpoint.url, last_error)

        return FallbackResult(
            success=False,
            error=f"All RPC endpoints failed. Last error: {last_error}",
            attempted=attempted,
        )

    async def is_any_available(
        self, probe: Callable[[RpcEndpoint], Awaitable[bool]],
    ) -> bool:
        """True if any candidate answers the probe, checked in rank order."""
        for endpoint in self.rank_candidates():
            try:
                if await probe(endpoint):
                    return True
            except Exception as exc:
                logger.debug("Probe failed for %s: %s", endpoint.url, exc)
        return False

    def _status_of(self, url: str) -> EndpointHealthStatus:
        health = self._health.get_endpoint_health(normalize_url(url))
        return health.status if health is not None else EndpointHealthStatus.UNKNOWN
