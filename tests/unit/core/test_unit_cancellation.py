# tests/unit/core/test_unit_cancellation.py — v1
"""Tests for core/cancellation.py — CancellationToken."""

from __future__ import annotations

import asyncio
import time

import pytest

from sorodeploy.core.cancellation import CancellationToken


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert token.is_cancellation_requested is False

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent_and_fires_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancelled(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert token.is_cancellation_requested
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_callback_fires_immediately_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancelled(lambda: calls.append(1))
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_disposer_unregisters(self):
        token = CancellationToken()
        calls = []
        dispose = token.on_cancelled(lambda: calls.append(1))
        dispose()
        token.cancel()
        assert calls == []

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_block_others(self):
        token = CancellationToken()
        calls = []

        def bad():
            raise RuntimeError("listener bug")

        token.on_cancelled(bad)
        token.on_cancelled(lambda: calls.append("ok"))
        token.cancel()
        assert calls == ["ok"]

    @pytest.mark.asyncio
    async def test_sleep_returns_false_when_not_cancelled(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_sleep_interrupted_by_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        t0 = time.monotonic()
        assert await token.sleep(5) is True
        assert time.monotonic() - t0 < 2

    @pytest.mark.asyncio
    async def test_wait_unblocks_on_cancel(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_linked_child_follows_parent(self):
        parent = CancellationToken()
        child, unlink = CancellationToken.linked(parent, None)
        parent.cancel()
        assert child.is_cancellation_requested
        unlink()

    @pytest.mark.asyncio
    async def test_child_cancel_does_not_reach_parent(self):
        parent = CancellationToken()
        child, unlink = CancellationToken.linked(parent)
        child.cancel()
        assert not parent.is_cancellation_requested
        unlink()

    @pytest.mark.asyncio
    async def test_unlinked_child_ignores_parent(self):
        parent = CancellationToken()
        child, unlink = CancellationToken.linked(parent)
        unlink()
        parent.cancel()
        assert not child.is_cancellation_requested
