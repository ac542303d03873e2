# src/batch/models.py — v1
"""Batch execution models: BatchMode, ItemResult, BatchRunReport, ProgressEvent."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from sorodeploy.core.models import ItemStatus


class BatchMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ItemResult(BaseModel):
    """Final (or in-flight) state of one batch item."""

    item_id: str
    name: str = ""
    status: ItemStatus = ItemStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    blocked_by: str | None = None
    artifact_ref: str | None = None
    transaction_hash: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class BatchRunReport(BaseModel):
    """Immutable summary of a finished batch run.

    results preserves the submitted item order.
    """

    model_config = {"frozen": True}

    batch_id: str
    mode: BatchMode
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    results: dict[str, ItemResult] = Field(default_factory=dict)

    @property
    def statuses(self) -> dict[str, ItemStatus]:
        return {item_id: r.status for item_id, r in self.results.items()}

    @property
    def counts(self) -> dict[str, int]:
        """Number of items per status, every status present."""
        tally = {status.value: 0 for status in ItemStatus}
        for r in self.results.values():
            tally[r.status.value] += 1
        return tally

    @property
    def has_failures(self) -> bool:
        return any(r.status is ItemStatus.FAILED for r in self.results.values())

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class ProgressEvent(BaseModel):
    """Progress notification sent to the sink on each transition."""

    batch_id: str
    item_id: str | None = None
    status: ItemStatus | None = None
    message: str | None = None
    done: int
    total: int
    percentage: float
