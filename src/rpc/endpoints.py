# src/rpc/endpoints.py — v1
"""Pick the RPC endpoint a batch deploys through.

Every configured endpoint is probed into a HealthRegistry, then the
FallbackSelector asks the best candidates for getNetwork until one
answers. All clients share one RateLimiter, so a throttling endpoint
backs off the probe and the selection alike.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from pydantic import BaseModel

from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.errors import SorodeployError
from sorodeploy.resilience.circuit_breaker import CircuitBreakerService
from sorodeploy.resilience.fallback import FallbackSelector
from sorodeploy.resilience.models import RetryPolicy, RpcEndpoint
from sorodeploy.resilience.rate_limiter import RateLimiter
from sorodeploy.rpc.client import DEFAULT_TIMEOUT_S, RpcClient
from sorodeploy.rpc.health import HealthRegistry

logger = logging.getLogger(__name__)


class EndpointSelectionError(SorodeployError):
    """No configured endpoint could be used."""


class SelectedEndpoint(BaseModel):
    """Endpoint chosen for a batch, with the passphrase it reported."""

    model_config = {"frozen": True}

    url: str
    passphrase: str


async def select_endpoint(
    endpoints: Iterable[RpcEndpoint],
    breaker_service: CircuitBreakerService,
    rate_limiter: RateLimiter,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    retry_policy: RetryPolicy | None = None,
    registry: HealthRegistry | None = None,
    token: CancellationToken | None = None,
    client_factory: Callable[..., RpcClient] = RpcClient,
) -> SelectedEndpoint:
    """Probe endpoints and return the first usable one, best first.

    Raises:
        EndpointSelectionError: If no endpoint answered getNetwork with a
            network passphrase.
    """
    endpoints = list(endpoints)
    registry = registry or HealthRegistry()
    clients: dict[str, RpcClient] = {}
    for endpoint in endpoints:
        registry.add_endpoint(endpoint.url, priority=endpoint.priority)
        clients[endpoint.url] = client_factory(
            endpoint.url, rate_limiter=rate_limiter, timeout_s=timeout_s,
        )

    await asyncio.gather(*(registry.probe(client) for client in clients.values()))

    async def get_network(endpoint: RpcEndpoint) -> Any:
        return await clients[endpoint.url].get_network()

    selector = FallbackSelector(
        registry, breaker_service, endpoints, retry_policy=retry_policy,
    )
    result = await selector.execute("getNetwork", get_network, token=token)
    if not result.success:
        raise EndpointSelectionError(result.error or "No RPC endpoint available")

    passphrase = result.value.get("passphrase") if isinstance(result.value, dict) else None
    if not passphrase:
        raise EndpointSelectionError(
            f"Endpoint {result.endpoint} did not report a network passphrase"
        )
    logger.info("Deploying through %s", result.endpoint)
    return SelectedEndpoint(url=result.endpoint, passphrase=passphrase)
