# src/core/cancellation.py — v1
"""Cooperative cancellation token passed down every async call boundary.

Cancellation is never preemptive: holders check the token at well-defined
points (before dispatching work, between retries) and long-running
operations await it alongside their own work to stop promptly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """Single-shot cancellation flag backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback raised")
        self._callbacks.clear()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, delay_s: float) -> bool:
        """Sleep for delay_s unless cancelled first.

        Returns:
            True if cancellation was requested before or during the sleep.
        """
        if self._event.is_set():
            return True
        if delay_s <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_s)
        except asyncio.TimeoutError:
            return False
        return True

    def on_cancelled(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired once on cancellation.

        Fires immediately if already cancelled. Returns a disposer that
        unregisters the callback.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def dispose() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return dispose

    @classmethod
    def linked(cls, *parents: CancellationToken | None) -> tuple[CancellationToken, Callable[[], None]]:
        """Create a child token cancelled whenever any parent is cancelled.

        Returns:
            (child token, disposer that unlinks the child from its parents).
        """
        child = cls()
        disposers = [p.on_cancelled(child.cancel) for p in parents if p is not None]

        def unlink() -> None:
            for dispose in disposers:
                dispose()

        return child, unlink
