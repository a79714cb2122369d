"""Unit tests for the background CodeReaper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from services.reaper import CodeReaper


def _store(removed=0, error=None):
    store = MagicMock()
    store.reap = AsyncMock(return_value=removed, side_effect=error)
    return store


async def test_run_once_sums_stores():
    reaper = CodeReaper([_store(2), _store(3)])
    assert await reaper.run_once() == 5


async def test_one_failing_store_does_not_stop_the_sweep():
    healthy = _store(4)
    reaper = CodeReaper([_store(error=RuntimeError("mongo down")), healthy])
    assert await reaper.run_once() == 4
    healthy.reap.assert_awaited_once()


async def test_start_and_stop():
    store = _store(1)
    reaper = CodeReaper([store], interval_seconds=0.01)
    reaper.start()
    assert reaper.running is True
    await asyncio.sleep(0.05)
    await reaper.stop()
    assert reaper.running is False
    assert store.reap.await_count >= 1


async def test_start_is_idempotent():
    reaper = CodeReaper([_store()], interval_seconds=60)
    reaper.start()
    task = reaper._task
    reaper.start()
    assert reaper._task is task
    await reaper.stop()


async def test_stop_without_start():
    await CodeReaper([]).stop()
