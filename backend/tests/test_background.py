"""Tests for the periodic sweep runner and the sweeps themselves."""
import asyncio

import pytest

from fileflow.services.background import (
    drain_queues, housekeeping, recover_on_startup, run_periodic, start_background_tasks,
    stop_background_tasks,
)
from fileflow.services.notifications import Action


async def _wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


async def test_failing_sweep_does_not_stop_the_loop(caplog):
    calls = []

    async def sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = asyncio.create_task(run_periodic("Test sweep", 0, sweep))
    await _wait_until(lambda: len(calls) >= 3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert "Test sweep failed: boom" in caplog.text


async def test_start_and_stop(services):
    tasks = start_background_tasks(services)
    assert len(tasks) == 5
    await stop_background_tasks(tasks)
    assert all(t.done() for t in tasks)


async def test_drain_queues_delivers_to_connected_users(services, socket_factory):
    await services.dispatcher.publish("f1", "FILE", Action.UPLOADED, owner_id="u1")
    sock = socket_factory()
    await services.dispatcher.record_connect("u1", "c1", sock)

    await drain_queues(services)
    assert [m["itemId"] for m in sock.sent] == ["f1"]


async def test_recover_on_startup_and_housekeeping(services, socket_factory):
    await services.dispatcher.record_connect("u1", "c1", socket_factory())
    await recover_on_startup(services)
    services.dispatcher.presence_ttl = 0
    assert await services.dispatcher.is_connected("u1") is False
    await housekeeping(services)
