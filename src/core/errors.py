# src/core/errors.py — v1
"""Exception hierarchy shared across the orchestration engine.

Structural errors (cycles, malformed graphs, invalid batches) are raised
from entry points before anything executes. Transient and permanent
errors describe a single remote call and drive the retry layer.
"""

from __future__ import annotations


class SorodeployError(Exception):
    """Base class for all sorodeploy errors."""


class StructuralError(SorodeployError):
    """Input that cannot be executed at all (cycles, malformed graphs)."""


class TransientError(SorodeployError):
    """Network or timeout shaped failure; worth retrying."""


class PermanentError(SorodeployError):
    """Validation shaped failure; retrying cannot help."""


class ThrottledError(TransientError):
    """Remote endpoint signalled "too many requests".

    Args:
        message: Human-readable error.
        retry_after_s: Server-provided delay before retrying, if any.
        endpoint: Endpoint that throttled the call.
    """

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after_s: float | None = None,
        endpoint: str = "",
    ) -> None:
        self.retry_after_s = retry_after_s
        self.endpoint = endpoint
        super().__init__(message)


class InvalidGraphError(StructuralError):
    """Dependency graph or batch item graph is malformed."""


class DependencyCycleError(StructuralError):
    """Dependency graph contains one or more cycles.

    Args:
        cycles: Each cycle as an ordered node list, first node repeated at the end.
    """

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(c) for c in cycles)
        super().__init__(f"Dependency cycle detected: {rendered}")


class BatchValidationError(StructuralError):
    """Batch input rejected before execution."""


class RpcTransportError(TransientError):
    """RPC endpoint unreachable or answered with a server error."""


class RpcRequestError(PermanentError):
    """RPC endpoint rejected the request (client error or JSON-RPC error).

    Args:
        message: Human-readable error.
        code: HTTP status or JSON-RPC error code, when known.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)
