# src/deploy/process.py — v1
"""Cancellable subprocess runner for the deploy tool.

The child is raced against the timeout and the cancellation token; if
either fires first the child is terminated (then killed if it lingers)
and whatever output it produced is still returned.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from sorodeploy.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

TERMINATE_GRACE_S = 5.0


@dataclass
class CommandResult:
    """Captured result of one tool invocation."""

    args: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        """stdout and stderr joined, the way the tool prints them."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


async def run_command(
    args: Sequence[str],
    cwd: str | None = None,
    timeout_s: float | None = None,
    token: CancellationToken | None = None,
) -> CommandResult:
    """Run args to completion, timeout, or cancellation.

    Raises:
        FileNotFoundError: If the executable does not exist.
        PermissionError: If the executable cannot be run.
    """
    args = list(args)
    logger.debug("Running %s (cwd=%s)", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    communicate = asyncio.ensure_future(proc.communicate())
    cancel_wait = asyncio.ensure_future(token.wait()) if token is not None else None
    waiters = {communicate} if cancel_wait is None else {communicate, cancel_wait}

    result = CommandResult(args=args, returncode=None)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED,
        )
        if communicate not in done:
            if cancel_wait is not None and cancel_wait in done:
                result.cancelled = True
                logger.info("Cancelling %s", args[0])
            else:
                result.timed_out = True
                logger.warning("%s timed out after %.0fs", " ".join(args[:3]), timeout_s or 0)
            await _terminate(proc)
        stdout, stderr = await communicate
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if proc.returncode is None:
            await _terminate(proc)
        if not communicate.done():
            communicate.cancel()

    result.returncode = proc.returncode
    result.stdout = stdout.decode("utf-8", errors="replace")
    result.stderr = stderr.decode("utf-8", errors="replace")
    return result


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_S)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
