# src/rpc/client.py — v1
"""JSON-RPC 2.0 client for network RPC endpoints.

Requests go over plain urllib in a worker thread and every call is routed
through a shared RateLimiter keyed by endpoint URL, so a throttled
endpoint backs off for all callers at once.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import urllib.error
import urllib.request
from typing import Any

from sorodeploy.core.errors import RpcRequestError, RpcTransportError, ThrottledError
from sorodeploy.resilience.models import normalize_url
from sorodeploy.resilience.rate_limiter import RateLimiter, parse_retry_after

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0

_request_ids = itertools.count(1)


class RpcClient:
    """Minimal JSON-RPC client for one endpoint.

    Args:
        url: Endpoint URL (trailing slash is ignored).
        rate_limiter: Shared limiter; a private one is created if omitted.
        timeout_s: Socket timeout per request.
    """

    def __init__(
        self,
        url: str,
        rate_limiter: RateLimiter | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._url = normalize_url(url)
        self._limiter = rate_limiter or RateLimiter()
        self._timeout_s = timeout_s

    @property
    def url(self) -> str:
        return self._url

    async def call(self, method: str, params: Any = None) -> Any:
        """Invoke a JSON-RPC method and return its result.

        Raises:
            ThrottledError: Endpoint still throttling after the limiter's retries.
            RpcTransportError: Network failure or 5xx response.
            RpcRequestError: 4xx response or JSON-RPC error object.
        """
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
        }
        if params is not None:
            payload["params"] = params

        async def send() -> Any:
            return await asyncio.to_thread(self._post, payload)

        return await self._limiter.execute(send, key=self._url)

    async def get_health(self) -> dict[str, Any]:
        return await self.call("getHealth")

    async def get_network(self) -> dict[str, Any]:
        return await self.call("getNetwork")

    async def simulate_transaction(self, transaction: str) -> dict[str, Any]:
        """Simulate a base64 transaction envelope."""
        return await self.call("simulateTransaction", {"transaction": transaction})

    # ------------------------------------------------------------------

    def _post(self, payload: dict[str, Any]) -> Any:
        body = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            self._url, data=body, headers={"Content-Type": "application/json"}
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise _http_error(exc, self._url) from exc
        except urllib.error.URLError as exc:
            raise RpcTransportError(f"{self._url} unreachable: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise RpcTransportError(f"{self._url} returned invalid JSON: {exc}") from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            logger.debug("RPC %s error %s: %s", payload["method"], code, message)
            raise RpcRequestError(f"RPC error {code}: {message}", code=code)
        return data.get("result") if isinstance(data, dict) else data


def _http_error(exc: urllib.error.HTTPError, url: str) -> Exception:
    if exc.code == 429:
        retry_after = parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None)
        return ThrottledError(
            f"429 Too Many Requests from {url}", retry_after_s=retry_after, endpoint=url,
        )
    if exc.code >= 500:
        return RpcTransportError(f"{exc.code} {exc.reason} from {url}")
    return RpcRequestError(f"{exc.code} {exc.reason} from {url}", code=exc.code)
