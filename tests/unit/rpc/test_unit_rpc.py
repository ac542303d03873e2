# tests/unit/rpc/test_unit_rpc.py — v1
"""Tests for rpc/client.py and rpc/health.py — urllib is always mocked."""

from __future__ import annotations

import io
import json
import urllib.error
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sorodeploy.core.errors import RpcRequestError, RpcTransportError, ThrottledError
from sorodeploy.resilience.models import EndpointHealthStatus, RateLimitPolicy
from sorodeploy.resilience.rate_limiter import RateLimiter
from sorodeploy.rpc.client import RpcClient
from sorodeploy.rpc.health import HealthRegistry

URL = "https://rpc.example"
URLOPEN = "urllib.request.urlopen"


def _response(payload: dict) -> MagicMock:
    cm = MagicMock()
    cm.__enter__.return_value.read.return_value = json.dumps(payload).encode("utf-8")
    return cm


def _http_error(code: int, headers: dict | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(URL, code, "error", headers or {}, io.BytesIO(b""))


def _client() -> RpcClient:
    return RpcClient(URL + "/", rate_limiter=RateLimiter(RateLimitPolicy(max_retries=0)))


class TestRpcClient:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        with patch(URLOPEN, return_value=_response({"jsonrpc": "2.0", "result": {"status": "healthy"}})) as urlopen:
            assert await _client().get_health() == {"status": "healthy"}
        request = urlopen.call_args.args[0]
        body = json.loads(request.data)
        assert request.full_url == URL
        assert body["method"] == "getHealth"
        assert "params" not in body

    @pytest.mark.asyncio
    async def test_simulate_sends_params(self):
        with patch(URLOPEN, return_value=_response({"result": {}})) as urlopen:
            await _client().simulate_transaction("AAAA")
        body = json.loads(urlopen.call_args.args[0].data)
        assert body["params"] == {"transaction": "AAAA"}

    @pytest.mark.asyncio
    async def test_json_rpc_error(self):
        payload = {"error": {"code": -32602, "message": "invalid params"}}
        with patch(URLOPEN, return_value=_response(payload)):
            with pytest.raises(RpcRequestError, match="RPC error -32602: invalid params") as exc_info:
                await _client().call("getLedgerEntries", {"keys": []})
        assert exc_info.value.code == -32602

    @pytest.mark.asyncio
    async def test_429_is_throttled_with_retry_after(self):
        with patch(URLOPEN, side_effect=_http_error(429, {"Retry-After": "3"})):
            with pytest.raises(ThrottledError) as exc_info:
                await _client().get_network()
        assert exc_info.value.retry_after_s == 3.0

    @pytest.mark.asyncio
    async def test_429_retried_through_limiter(self, fake_clock):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            fake_clock.advance(seconds)

        limiter = RateLimiter(RateLimitPolicy(max_retries=2), clock=fake_clock, sleep=fake_sleep)
        client = RpcClient(URL, rate_limiter=limiter)
        responses = [_http_error(429, {"Retry-After": "1"}), _response({"result": "ok"})]
        with patch(URLOPEN, side_effect=responses):
            assert await client.call("getNetwork") == "ok"
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_5xx_is_transport_error(self):
        with patch(URLOPEN, side_effect=_http_error(503)):
            with pytest.raises(RpcTransportError, match="503"):
                await _client().get_health()

    @pytest.mark.asyncio
    async def test_4xx_is_request_error(self):
        with patch(URLOPEN, side_effect=_http_error(404)):
            with pytest.raises(RpcRequestError) as exc_info:
                await _client().get_health()
        assert exc_info.value.code == 404

    @pytest.mark.asyncio
    async def test_unreachable(self):
        with patch(URLOPEN, side_effect=urllib.error.URLError("Name or service not known")):
            with pytest.raises(RpcTransportError, match="unreachable"):
                await _client().get_health()


class TestHealthRegistry:
    def _probe_client(self, **kwargs) -> MagicMock:
        client = MagicMock()
        client.url = URL
        client.get_health = AsyncMock(**kwargs)
        return client

    def test_unknown_until_checked(self):
        registry = HealthRegistry()
        entry = registry.add_endpoint(URL + "/", priority=2)
        assert entry.status is EndpointHealthStatus.UNKNOWN
        assert registry.get_endpoint_health(URL).priority == 2
        assert registry.get_endpoint_health("https://other.example") is None

    def test_set_status_keeps_priority(self):
        registry = HealthRegistry()
        registry.add_endpoint(URL, priority=4)
        registry.set_status(URL, EndpointHealthStatus.DEGRADED, latency_ms=2500)
        entry = registry.get_endpoint_health(URL)
        assert entry.status is EndpointHealthStatus.DEGRADED
        assert entry.priority == 4
        assert len(registry.all()) == 1

    @pytest.mark.asyncio
    async def test_probe_healthy(self):
        registry = HealthRegistry()
        entry = await registry.probe(self._probe_client(return_value={"status": "healthy"}))
        assert entry.status is EndpointHealthStatus.HEALTHY
        assert entry.latency_ms is not None

    @pytest.mark.asyncio
    async def test_probe_slow_is_degraded(self):
        registry = HealthRegistry(degraded_latency_ms=-1)
        entry = await registry.probe(self._probe_client(return_value={"status": "healthy"}))
        assert entry.status is EndpointHealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_probe_error_is_unhealthy(self):
        registry = HealthRegistry()
        entry = await registry.probe(self._probe_client(side_effect=RpcTransportError("down")))
        assert entry.status is EndpointHealthStatus.UNHEALTHY
        assert entry.last_error == "down"

    @pytest.mark.asyncio
    async def test_probe_reported_unhealthy(self):
        registry = HealthRegistry()
        entry = await registry.probe(self._probe_client(return_value={"status": "syncing"}))
        assert entry.status is EndpointHealthStatus.UNHEALTHY
