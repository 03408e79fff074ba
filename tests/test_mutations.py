import asyncio

import pytest

from switchbot_fan_bridge.mutations import MutationQueue, QueueState


@pytest.mark.asyncio
async def test_notifications_in_one_window_coalesce() -> None:
    calls = 0

    async def _flush() -> None:
        nonlocal calls
        calls += 1

    queue = MutationQueue("fan-1", _flush, push_rate=0.02)
    queue.notify()
    queue.notify()
    queue.notify()
    assert queue.state is QueueState.DEBOUNCING
    assert queue.busy is True

    await asyncio.sleep(0.08)
    await queue.join()

    assert calls == 1
    assert queue.state is QueueState.IDLE
    assert queue.busy is False


@pytest.mark.asyncio
async def test_guard_set_while_dispatching() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def _flush() -> None:
        started.set()
        await release.wait()

    queue = MutationQueue("fan-1", _flush, push_rate=0.0)
    queue.notify()
    await asyncio.wait_for(started.wait(), timeout=1.0)

    assert queue.update_in_progress is True
    assert queue.state is QueueState.DISPATCHING

    release.set()
    await queue.join()
    assert queue.update_in_progress is False


@pytest.mark.asyncio
async def test_window_closing_during_dispatch_queues_one_rerun() -> None:
    calls = 0
    started = asyncio.Event()
    release = asyncio.Event()

    async def _flush() -> None:
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()

    queue = MutationQueue("fan-1", _flush, push_rate=0.01)
    queue.notify()
    await asyncio.wait_for(started.wait(), timeout=1.0)

    queue.notify()
    queue.notify()
    await asyncio.sleep(0.05)
    assert calls == 1

    release.set()
    await queue.join()

    assert calls == 2
    assert queue.state is QueueState.IDLE


@pytest.mark.asyncio
async def test_flush_failure_clears_guard(caplog) -> None:
    async def _flush() -> None:
        raise RuntimeError("boom")

    queue = MutationQueue("fan-1", _flush, push_rate=0.0)
    with caplog.at_level("ERROR", logger="switchbot.dispatch"):
        queue.notify()
        await asyncio.sleep(0.02)
        await queue.join()

    assert queue.update_in_progress is False
    assert queue.state is QueueState.IDLE
    assert any("Dispatch cycle failed" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_close_drops_pending_window() -> None:
    calls = 0

    async def _flush() -> None:
        nonlocal calls
        calls += 1

    queue = MutationQueue("fan-1", _flush, push_rate=0.02)
    queue.notify()
    await queue.close()
    queue.notify()
    await asyncio.sleep(0.05)

    assert calls == 0
    assert queue.state is QueueState.IDLE
