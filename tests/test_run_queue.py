"""Tests for the in-process run queue."""

import asyncio

import pytest

from run_queue import QueueClosedError, RunQueue


@pytest.mark.asyncio
async def test_jobs_are_processed():
    seen = []

    async def handler(workflow_id):
        seen.append(workflow_id)

    queue = RunQueue(workers=2)
    queue.start(handler)
    for i in range(5):
        queue.submit(f"wf-{i}")
    await asyncio.wait_for(queue.join(), timeout=5)
    await queue.stop()

    assert sorted(seen) == [f"wf-{i}" for i in range(5)]
    assert queue.processed == 5


@pytest.mark.asyncio
async def test_handler_crash_does_not_kill_worker():
    seen = []

    async def handler(workflow_id):
        if workflow_id == "bad":
            raise RuntimeError("boom")
        seen.append(workflow_id)

    queue = RunQueue(workers=1)
    queue.start(handler)
    queue.submit("bad")
    queue.submit("good")
    await asyncio.wait_for(queue.join(), timeout=5)
    await queue.stop()

    assert seen == ["good"]
    assert queue.failed == 1
    assert queue.processed == 1


@pytest.mark.asyncio
async def test_stop_drains_in_flight_and_drops_unstarted():
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def handler(workflow_id):
        started.set()
        await release.wait()
        finished.append(workflow_id)

    queue = RunQueue(workers=1)
    queue.start(handler)
    queue.submit("running")
    queue.submit("waiting")
    await asyncio.wait_for(started.wait(), timeout=5)

    stopper = asyncio.create_task(queue.stop(timeout=5))
    await asyncio.sleep(0)
    assert queue.stats()["accepting"] is False
    release.set()
    await stopper

    assert finished == ["running"]
    with pytest.raises(QueueClosedError):
        queue.submit("late")


@pytest.mark.asyncio
async def test_stop_cancels_after_timeout():
    cancelled = []

    async def handler(workflow_id):
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.append(workflow_id)
            raise

    queue = RunQueue(workers=1)
    queue.start(handler)
    queue.submit("stuck")
    await asyncio.sleep(0.05)
    await queue.stop(timeout=0.1)

    assert cancelled == ["stuck"]


def test_submit_before_start_is_rejected():
    with pytest.raises(QueueClosedError):
        RunQueue().submit("wf-1")
