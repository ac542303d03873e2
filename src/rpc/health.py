# src/rpc/health.py — v1
"""In-memory endpoint health registry.

Implements the HealthMonitor lookup used by FallbackSelector. Status is
either set directly or refreshed by probe(), which times a getHealth call.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from sorodeploy.resilience.models import EndpointHealth, EndpointHealthStatus, normalize_url
from sorodeploy.rpc.client import RpcClient

logger = logging.getLogger(__name__)

DEGRADED_LATENCY_MS = 2000


class HealthRegistry:
    """EndpointHealth store keyed by normalized URL."""

    def __init__(self, degraded_latency_ms: int = DEGRADED_LATENCY_MS) -> None:
        self._entries: dict[str, EndpointHealth] = {}
        self._degraded_latency_ms = degraded_latency_ms

    def add_endpoint(self, url: str, priority: int = 0) -> EndpointHealth:
        """Register an endpoint with unknown health (no-op if present)."""
        key = normalize_url(url)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = EndpointHealth(url=key, priority=priority)
        return entry

    def set_status(
        self,
        url: str,
        status: EndpointHealthStatus,
        latency_ms: int | None = None,
        error: str | None = None,
    ) -> EndpointHealth:
        key = normalize_url(url)
        previous = self._entries.get(key)
        entry = EndpointHealth(
            url=key,
            status=status,
            priority=previous.priority if previous else 0,
            latency_ms=latency_ms,
            checked_at=datetime.now(timezone.utc),
            last_error=error,
        )
        self._entries[key] = entry
        if previous is None or previous.status is not status:
            logger.info("Endpoint %s is now %s", key, status.value)
        return entry

    def get_endpoint_health(self, url: str) -> EndpointHealth | None:
        return self._entries.get(normalize_url(url))

    def all(self) -> list[EndpointHealth]:
        return list(self._entries.values())

    async def probe(self, client: RpcClient) -> EndpointHealth:
        """Call getHealth on the client's endpoint and record the result.

        Slow answers are degraded, errors and non-"healthy" answers unhealthy.
        """
        t0 = time.monotonic()
        try:
            answer = await client.get_health()
        except Exception as exc:
            logger.warning("Health probe failed for %s: %s", client.url, exc)
            return self.set_status(client.url, EndpointHealthStatus.UNHEALTHY, error=str(exc))

        latency_ms = int((time.monotonic() - t0) * 1000)
        reported = answer.get("status") if isinstance(answer, dict) else None
        if reported is not None and reported != "healthy":
            return self.set_status(
                client.url,
                EndpointHealthStatus.UNHEALTHY,
                latency_ms=latency_ms,
                error=f"Endpoint reported status '{reported}'",
            )
        status = (
            EndpointHealthStatus.DEGRADED
            if latency_ms > self._degraded_latency_ms
            else EndpointHealthStatus.HEALTHY
        )
        return self.set_status(client.url, status, latency_ms=latency_ms)
