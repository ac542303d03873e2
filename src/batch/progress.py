# src/batch/progress.py — v1
"""Progress aggregation for batch runs.

ProgressTracker counts terminal transitions and emits ProgressEvents with
a non-decreasing percentage. IncrementalProgressAdapter turns those
absolute percentages into clamped increments for hosts whose progress
API only accepts deltas.
"""

from __future__ import annotations

import logging
from typing import Callable

from sorodeploy.batch.models import ProgressEvent
from sorodeploy.core.models import ItemStatus

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Aggregate item transitions into ProgressEvents for one batch."""

    def __init__(self, batch_id: str, total: int, sink: ProgressSink | None = None) -> None:
        self._batch_id = batch_id
        self._total = total
        self._sink = sink
        self._done = 0
        self._percentage = 0.0 if total else 100.0

    @property
    def done(self) -> int:
        return self._done

    @property
    def percentage(self) -> float:
        return self._percentage

    def transition(
        self, item_id: str, status: ItemStatus, message: str | None = None,
    ) -> ProgressEvent:
        """Record a status transition and notify the sink."""
        if status.is_terminal:
            self._done = min(self._done + 1, self._total)
            if self._total:
                current = round(self._done / self._total * 100, 2)
                self._percentage = max(self._percentage, current)
        event = ProgressEvent(
            batch_id=self._batch_id,
            item_id=item_id,
            status=status,
            message=message,
            done=self._done,
            total=self._total,
            percentage=self._percentage,
        )
        self._publish(event)
        return event

    def announce(self, message: str) -> ProgressEvent:
        """Emit a batch-level event without changing counts."""
        event = ProgressEvent(
            batch_id=self._batch_id,
            message=message,
            done=self._done,
            total=self._total,
            percentage=self._percentage,
        )
        self._publish(event)
        return event

    def _publish(self, event: ProgressEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            logger.exception("Progress sink raised for batch %s", self._batch_id)


class IncrementalProgressAdapter:
    """Progress sink forwarding clamped percentage increments.

    Args:
        report: Host callback taking (increment, message).
    """

    def __init__(self, report: Callable[[float, str | None], None]) -> None:
        self._report = report
        self._last = 0.0

    @property
    def reported(self) -> float:
        return self._last

    def __call__(self, event: ProgressEvent) -> None:
        current = max(self._last, event.percentage)
        increment = current - self._last
        self._last = current
        if increment > 0 or event.message:
            self._report(increment, event.message)
