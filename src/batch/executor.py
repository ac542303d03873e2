# src/batch/executor.py — v1
"""Batch executor — run deployment items in dependency order.

Sequential mode walks items in the given order. Parallel mode walks waves
(precomputed or recomputed from depends_on) and dispatches each wave's
runnable items concurrently under an asyncio.Semaphore; wave k+1 starts
only after every task of wave k has finished.

Failures never propagate as failures: a dependent of a non-succeeded item
is marked skipped without calling deploy-one. Cancellation is cooperative
and checked before each item (sequential), before each wave and again
after acquiring the semaphore (parallel).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence

from sorodeploy.batch.models import BatchMode, BatchRunReport, ItemResult
from sorodeploy.batch.progress import ProgressSink, ProgressTracker
from sorodeploy.core.cancellation import CancellationToken
from sorodeploy.core.errors import BatchValidationError
from sorodeploy.core.models import BatchItem, DeployOutcome, ItemStatus
from sorodeploy.logging.context import set_batch_context, set_item_context
from sorodeploy.resolver.dag_builder import compute_item_waves

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class DeployOne(Protocol):
    """Deploys a single item. Must honour the token cooperatively."""

    async def __call__(self, item: BatchItem, token: CancellationToken) -> DeployOutcome: ...


class BatchExecutor:
    """Runs batches of BatchItems. One instance may run one batch at a time."""

    def __init__(self) -> None:
        self._active_token: CancellationToken | None = None

    @property
    def is_running(self) -> bool:
        return self._active_token is not None

    def cancel_active_batch(self) -> bool:
        """Cancel the batch in progress. Returns False if none is running."""
        if self._active_token is None:
            return False
        logger.info("Cancellation requested for active batch")
        self._active_token.cancel()
        return True

    async def run(
        self,
        items: Iterable[BatchItem],
        mode: BatchMode | str = BatchMode.SEQUENTIAL,
        concurrency: int = DEFAULT_CONCURRENCY,
        deploy_one: DeployOne | None = None,
        token: CancellationToken | None = None,
        waves: Sequence[Sequence[str]] | None = None,
        on_progress: ProgressSink | None = None,
        batch_id: str | None = None,
    ) -> BatchRunReport:
        """Execute a batch and return its final report.

        Args:
            items: Ordered batch items.
            mode: "sequential" or "parallel".
            concurrency: Max items in flight in parallel mode (1-10).
            deploy_one: Async callable deploying one item.
            token: External cancellation token.
            waves: Precomputed waves of item ids (parallel mode).
            on_progress: Observer receiving ProgressEvents.
            batch_id: Identifier for logs and events (generated if omitted).

        Raises:
            ValueError: If concurrency is out of range or deploy_one is missing.
            BatchValidationError: If the items or waves are inconsistent.
            DependencyCycleError: If parallel items form a cycle.
        """
        if deploy_one is None:
            raise ValueError("deploy_one is required")
        if isinstance(concurrency, bool) or not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
            raise ValueError(
                f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, "
                f"got {concurrency!r}"
            )
        if self._active_token is not None:
            raise RuntimeError("A batch is already running on this executor")

        mode = BatchMode(mode)
        items = list(items)
        _validate(items, mode, waves)
        if mode is BatchMode.PARALLEL:
            plan = [list(w) for w in waves] if waves is not None else compute_item_waves(items)
        else:
            plan = []

        batch_id = batch_id or f"batch-{uuid.uuid4().hex[:12]}"
        run_token, unlink = CancellationToken.linked(token)
        self._active_token = run_token
        set_batch_context(batch_id)

        results = {item.id: ItemResult(item_id=item.id, name=item.name) for item in items}
        tracker = ProgressTracker(batch_id, len(items), on_progress)
        started_at = _now()
        logger.info(
            "Batch %s started: %d item(s), mode=%s, concurrency=%d",
            batch_id, len(items), mode.value, concurrency,
        )

        try:
            if mode is BatchMode.SEQUENTIAL:
                await self._run_sequential(items, results, deploy_one, run_token, tracker)
            else:
                await self._run_parallel(
                    items, plan, concurrency, results, deploy_one, run_token, tracker,
                )
        finally:
            unlink()
            self._active_token = None
            set_batch_context(None)

        report = BatchRunReport(
            batch_id=batch_id,
            mode=mode,
            started_at=started_at,
            finished_at=_now(),
            cancelled=run_token.is_cancellation_requested,
            results=results,
        )
        tracker.announce("Batch cancelled" if report.cancelled else "Batch complete")
        logger.info("Batch %s finished: %s", batch_id, report.counts)
        return report

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _run_sequential(
        self,
        items: list[BatchItem],
        results: dict[str, ItemResult],
        deploy_one: DeployOne,
        token: CancellationToken,
        tracker: ProgressTracker,
    ) -> None:
        for idx, item in enumerate(items):
            if token.is_cancellation_requested:
                for rest in items[idx:]:
                    _cancel_unstarted(results[rest.id], tracker)
                logger.info("Batch cancelled, %d item(s) not started", len(items) - idx)
                return
            blocker = _first_blocker(item, results)
            if blocker is not None:
                _skip(results[item.id], blocker, results, tracker)
                continue
            await _execute_item(item, results[item.id], deploy_one, token, tracker)

    async def _run_parallel(
        self,
        items: list[BatchItem],
        plan: list[list[str]],
        concurrency: int,
        results: dict[str, ItemResult],
        deploy_one: DeployOne,
        token: CancellationToken,
        tracker: ProgressTracker,
    ) -> None:
        by_id = {item.id: item for item in items}
        semaphore = asyncio.Semaphore(concurrency)

        async def guarded(item: BatchItem) -> None:
            async with semaphore:
                if token.is_cancellation_requested:
                    _cancel_unstarted(results[item.id], tracker)
                    return
                await _execute_item(item, results[item.id], deploy_one, token, tracker)

        for wave_idx, wave in enumerate(plan):
            if token.is_cancellation_requested:
                for later in plan[wave_idx:]:
                    for item_id in later:
                        _cancel_unstarted(results[item_id], tracker)
                logger.info("Batch cancelled before wave %d/%d", wave_idx + 1, len(plan))
                return

            logger.debug("Wave %d/%d: %s", wave_idx + 1, len(plan), wave)
            tasks: list[asyncio.Task[None]] = []
            for item_id in wave:
                item = by_id[item_id]
                blocker = _first_blocker(item, results)
                if blocker is not None:
                    _skip(results[item_id], blocker, results, tracker)
                    continue
                tasks.append(asyncio.create_task(guarded(item), name=f"deploy:{item_id}"))
            if tasks:
                await asyncio.gather(*tasks)


# ----------------------------------------------------------------------
# Item transitions
# ----------------------------------------------------------------------


async def _execute_item(
    item: BatchItem,
    result: ItemResult,
    deploy_one: DeployOne,
    token: CancellationToken,
    tracker: ProgressTracker,
) -> None:
    set_item_context(item.id)
    try:
        result.status = ItemStatus.RUNNING
        result.started_at = _now()
        tracker.transition(item.id, ItemStatus.RUNNING, f"Deploying {item.name}")

        try:
            outcome = await deploy_one(item, token)
        except Exception as exc:
            logger.error("Deploy of '%s' raised: %s", item.id, exc, exc_info=True)
            outcome = DeployOutcome(
                success=False,
                error=str(exc) or type(exc).__name__,
                error_type="execution",
            )

        result.finished_at = _now()
        if outcome.success:
            result.status = ItemStatus.SUCCEEDED
            result.artifact_ref = outcome.artifact_ref
            result.transaction_hash = outcome.transaction_hash
            message = f"Deployed {item.name}"
            logger.info("Item '%s' succeeded (%s)", item.id, outcome.artifact_ref or "no ref")
        elif outcome.cancelled or token.is_cancellation_requested:
            result.status = ItemStatus.CANCELLED
            result.error = outcome.error or "Cancelled"
            result.error_type = "cancelled"
            message = f"Cancelled {item.name}"
            logger.info("Item '%s' cancelled", item.id)
        else:
            result.status = ItemStatus.FAILED
            result.error = outcome.error or "Deployment failed"
            result.error_type = outcome.error_type or "execution"
            message = f"Failed {item.name}: {result.error}"
            logger.warning("Item '%s' failed (%s): %s", item.id, result.error_type, result.error)
        tracker.transition(item.id, result.status, message)
    finally:
        set_item_context(None)


def _first_blocker(item: BatchItem, results: dict[str, ItemResult]) -> str | None:
    """First dependency (in batch order) that did not succeed."""
    order = list(results)
    for dep in sorted(item.depends_on, key=order.index):
        if results[dep].status is not ItemStatus.SUCCEEDED:
            return dep
    return None


def _skip(
    result: ItemResult,
    blocker: str,
    results: dict[str, ItemResult],
    tracker: ProgressTracker,
) -> None:
    dep_name = results[blocker].name or blocker
    result.status = ItemStatus.SKIPPED
    result.error = f'Skipped because dependency "{dep_name}" did not succeed'
    result.error_type = "dependency"
    result.blocked_by = blocker
    result.finished_at = _now()
    logger.info("Item '%s' skipped: blocked by '%s'", result.item_id, blocker)
    tracker.transition(result.item_id, ItemStatus.SKIPPED, result.error)


def _cancel_unstarted(result: ItemResult, tracker: ProgressTracker) -> None:
    if result.status.is_terminal:
        return
    result.status = ItemStatus.CANCELLED
    result.error = "Cancelled before start"
    result.error_type = "cancelled"
    result.finished_at = _now()
    tracker.transition(result.item_id, ItemStatus.CANCELLED, result.error)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------


def _validate(
    items: list[BatchItem],
    mode: BatchMode,
    waves: Sequence[Sequence[str]] | None,
) -> None:
    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise BatchValidationError(f"Duplicate item ids: {dupes}")

    position = {item_id: idx for idx, item_id in enumerate(ids)}
    for item in items:
        for dep in sorted(item.depends_on):
            if dep == item.id:
                raise BatchValidationError(f"Item '{item.id}' depends on itself")
            if dep not in position:
                raise BatchValidationError(
                    f"Item '{item.id}' depends on unknown item '{dep}'"
                )
            if mode is BatchMode.SEQUENTIAL and position[dep] > position[item.id]:
                raise BatchValidationError(
                    f"Item '{item.id}' is listed before its dependency '{dep}'"
                )

    if waves is None:
        return

    wave_of: dict[str, int] = {}
    for wave_idx, wave in enumerate(waves):
        for item_id in wave:
            if item_id not in position:
                raise BatchValidationError(f"Wave {wave_idx} names unknown item '{item_id}'")
            if item_id in wave_of:
                raise BatchValidationError(f"Item '{item_id}' appears in more than one wave slot")
            wave_of[item_id] = wave_idx
    missing = [i for i in ids if i not in wave_of]
    if missing:
        raise BatchValidationError(f"Items missing from waves: {missing}")
    for item in items:
        for dep in item.depends_on:
            if wave_of[dep] >= wave_of[item.id]:
                raise BatchValidationError(
                    f"Item '{item.id}' (wave {wave_of[item.id]}) must come after "
                    f"its dependency '{dep}' (wave {wave_of[dep]})"
                )


def _now() -> datetime:
    return datetime.now(timezone.utc)
