# src/deploy/resilient.py — v1
"""Deploy-one wrapper adding retries and a per-network circuit breaker.

Only the deployment itself runs under the breaker. An optional prepare
step (building a directory into a wasm) runs once beforehand, so a
contract that does not compile is neither retried nor counted against
the network.

A failed DeployOutcome is turned into a transient or permanent error so
the breaker service can decide whether to retry: validation failures are
never retried, network failures always are, anything else is classified
from its message.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sorodeploy.batch.executor import DeployOne
from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.errors import PermanentError, TransientError
from sorodeploy.core.models import BatchItem, DeployOutcome
from sorodeploy.resilience.circuit_breaker import CircuitBreakerService
from sorodeploy.resilience.models import BreakerPolicy, ErrorClass, RetryPolicy
from sorodeploy.resilience.retry import classify_message

logger = logging.getLogger(__name__)

_PERMANENT_TYPES = frozenset({"validation", "dependency"})
_TRANSIENT_TYPES = frozenset({"network"})

PrepareItem = Callable[[BatchItem, CancellationToken], Awaitable["BatchItem | DeployOutcome"]]


class _FailedTransient(TransientError):
    def __init__(self, outcome: DeployOutcome) -> None:
        self.outcome = outcome
        super().__init__(outcome.error or "Deployment failed")


class _FailedPermanent(PermanentError):
    def __init__(self, outcome: DeployOutcome) -> None:
        self.outcome = outcome
        super().__init__(outcome.error or "Deployment failed")


class ResilientDeployer:
    """Run an inner deploy-one through CircuitBreakerService.execute_with_retry.

    Args:
        inner: Deploy-one to wrap (usually a CliDeployer).
        breaker_service: Shared retry/breaker service.
        network: Network name; breaker key is "deploy:<network>".
        retry_policy: Optional retry policy override.
        breaker_policy: Optional breaker policy override.
        prepare: Optional one-shot step run before the retried deploy
            (usually CliDeployer.prepare). Returning a DeployOutcome ends
            the item with that outcome.
    """

    def __init__(
        self,
        inner: DeployOne,
        breaker_service: CircuitBreakerService,
        network: str,
        retry_policy: RetryPolicy | None = None,
        breaker_policy: BreakerPolicy | None = None,
        prepare: PrepareItem | None = None,
    ) -> None:
        self._inner = inner
        self._breaker = breaker_service
        self._key = f"deploy:{network}"
        self._retry_policy = retry_policy
        self._breaker_policy = breaker_policy
        self._prepare = prepare

    @property
    def key(self) -> str:
        return self._key

    async def __call__(self, item: BatchItem, token: CancellationToken) -> DeployOutcome:
        if self._prepare is not None and not token.is_cancellation_requested:
            prepared = await self._prepare(item, token)
            if isinstance(prepared, DeployOutcome):
                if not prepared.success:
                    logger.warning("Preparing '%s' failed: %s", item.id, prepared.error)
                return prepared
            item = prepared

        async def attempt() -> DeployOutcome:
            outcome = await self._inner(item, token)
            if outcome.success or outcome.cancelled:
                return outcome
            raise _as_error(outcome)

        result = await self._breaker.execute_with_retry(
            self._key,
            attempt,
            retry_policy=self._retry_policy,
            breaker_policy=self._breaker_policy,
            token=token,
        )

        if result.success:
            return result.value
        if result.cancelled:
            return DeployOutcome(
                success=False,
                error=result.last_error or "Cancelled",
                error_type="cancelled",
                cancelled=True,
            )
        if result.circuit_open and result.attempts == 0:
            logger.warning("Deploy of '%s' rejected: circuit '%s' is open", item.id, self._key)
            return DeployOutcome(
                success=False,
                error=f"Circuit open for '{self._key}'; too many recent failures",
                error_type="network",
            )

        exc = result.last_exception
        if isinstance(exc, (_FailedTransient, _FailedPermanent)):
            outcome = exc.outcome
            if result.attempts > 1:
                outcome = outcome.model_copy(update={
                    "error": f"{outcome.error} (after {result.attempts} attempts)",
                })
            return outcome
        return DeployOutcome(
            success=False,
            error=result.last_error or "Deployment failed",
            error_type="execution",
        )


def _as_error(outcome: DeployOutcome) -> Exception:
    if outcome.error_type in _PERMANENT_TYPES:
        return _FailedPermanent(outcome)
    if outcome.error_type in _TRANSIENT_TYPES:
        return _FailedTransient(outcome)
    if classify_message(outcome.error or "") is ErrorClass.PERMANENT:
        return _FailedPermanent(outcome)
    return _FailedTransient(outcome)
