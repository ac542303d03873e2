# src/logging/context.py — v1
"""Contextual logging support — attach batch_id, item_id, endpoint to log records.

Each executor item task runs in its own copy of the context, so values set
inside one task never leak into a sibling.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_batch_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "batch_id", default=None
)
_item_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "item_id", default=None
)
_endpoint: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "endpoint", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    batch_id: str | None = None
    item_id: str | None = None
    endpoint: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        batch_id=_batch_id.get(),
        item_id=_item_id.get(),
        endpoint=_endpoint.get(),
    )


def set_batch_context(batch_id: str | None) -> None:
    """Set batch-level context (called once per batch run)."""
    _batch_id.set(batch_id)


def set_item_context(item_id: str | None) -> None:
    """Set item-level context (called inside each item task)."""
    _item_id.set(item_id)


def set_endpoint_context(endpoint: str | None) -> None:
    _endpoint.set(endpoint)


def clear_context() -> None:
    """Reset all context variables."""
    _batch_id.set(None)
    _item_id.set(None)
    _endpoint.set(None)
