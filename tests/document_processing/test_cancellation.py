import asyncio

import pytest

from src.functions.document_processing.core.contracts.errors import RunCancelled
from src.functions.document_processing.core.orchestration.cancellation import CancellationController


@pytest.mark.asyncio
async def test_stop_with_nothing_active_is_safe():
    controller = CancellationController(reset_delay_seconds=0.05)

    controller.stop()

    assert controller.cancelled is True
    assert controller.stop_count == 1
    assert controller.connections == {}


@pytest.mark.asyncio
async def test_cancelled_flag_resets_after_delay():
    controller = CancellationController(reset_delay_seconds=0.05)
    controller.stop()

    await asyncio.sleep(0.08)

    assert controller.cancelled is False


@pytest.mark.asyncio
async def test_duplicate_connection_is_refused_until_released():
    controller = CancellationController()
    handle = controller.open_connection("A")

    assert controller.open_connection("A") is None
    assert controller.is_running("A") is True

    controller.release(handle)
    assert controller.is_running("A") is False
    assert controller.open_connection("A") is not None


@pytest.mark.asyncio
async def test_stop_aborts_tracked_requests():
    controller = CancellationController()

    task = asyncio.create_task(controller.track(asyncio.sleep(10)))
    await asyncio.sleep(0)
    assert controller.outstanding_requests == 1

    controller.stop()

    with pytest.raises(RunCancelled):
        await task
    assert controller.outstanding_requests == 0


@pytest.mark.asyncio
async def test_stop_closes_handles_and_cancels_timers():
    controller = CancellationController()
    handle = controller.open_connection("A")
    fired = []
    handle.call_later(0.05, lambda: fired.append(True))
    worker = handle.spawn(asyncio.sleep(10))

    controller.stop()
    await asyncio.sleep(0.08)

    assert fired == []
    assert worker.cancelled()
    assert handle.closed and handle.stopped
    assert isinstance(handle.done.exception(), RunCancelled)
    assert controller.scheduled_timers == 0
    assert controller.is_running("A") is False


@pytest.mark.asyncio
async def test_handle_settles_once():
    controller = CancellationController()
    handle = controller.open_connection("A")

    assert handle.settle("first") is True
    assert handle.settle("second") is False
    assert handle.fail(RuntimeError("late")) is False
    assert await handle.done == "first"


@pytest.mark.asyncio
async def test_stop_hooks_run_even_if_one_fails():
    controller = CancellationController()
    calls = []

    def broken_hook():
        raise RuntimeError("boom")

    controller.add_stop_hook(broken_hook)
    controller.add_stop_hook(lambda: calls.append("ran"))

    controller.stop()

    assert calls == ["ran"]
