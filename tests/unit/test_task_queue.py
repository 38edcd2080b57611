"""
Tests for the concurrency-limited task queue.
"""

import asyncio

import pytest

from canvas_studio.core.errors import Cancelled
from canvas_studio.core.task_queue import AbortSignal, TaskQueue, TaskStatus


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        TaskQueue(0)


def test_abort_signal():
    signal = AbortSignal()
    signal.raise_if_aborted()  # ok

    signal.abort()
    assert signal.aborted
    with pytest.raises(Cancelled):
        signal.raise_if_aborted()


class TestTaskQueue:
    """Tests for TaskQueue scheduling."""

    @pytest.mark.asyncio
    async def test_burst_never_exceeds_limit(self):
        queue = TaskQueue(5)
        active = 0
        peak = 0

        async def work(signal):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.005)
            active -= 1
            return "ok"

        handles = [queue.submit(work, label=f"item {i}") for i in range(50)]
        assert queue.running_count == 5
        assert queue.queued_count == 45

        results = await asyncio.gather(*(h.wait() for h in handles))
        assert results == ["ok"] * 50
        assert peak == 5
        assert queue.running_count == 0

    @pytest.mark.asyncio
    async def test_fifo_admission(self):
        queue = TaskQueue(1)
        started = []

        def make(i):
            async def work(signal):
                started.append(i)
                await asyncio.sleep(0)
            return work

        for i in range(5):
            queue.submit(make(i))
        await queue.join()
        assert started == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_priority_runs_first(self):
        queue = TaskQueue(1)
        gate = asyncio.Event()
        started = []

        async def blocker(signal):
            await gate.wait()

        def make(name):
            async def work(signal):
                started.append(name)
            return work

        queue.submit(blocker)
        queue.submit(make("low"))
        urgent = queue.submit(make("high"), priority=10)
        assert queue.queue_position(urgent.id) == 0

        gate.set()
        await queue.join()
        assert started == ["high", "low"]

    @pytest.mark.asyncio
    async def test_cancelled_queued_item_never_runs(self):
        queue = TaskQueue(1)
        gate = asyncio.Event()
        invoked = False

        async def blocker(signal):
            await gate.wait()

        async def never(signal):
            nonlocal invoked
            invoked = True

        queue.submit(blocker)
        handle = queue.submit(never)
        assert queue.cancel(handle.id)
        assert handle.status == TaskStatus.CANCELLED

        gate.set()
        await queue.join()
        assert not invoked
        with pytest.raises(Cancelled):
            await handle.wait()

    @pytest.mark.asyncio
    async def test_cancel_running_frees_slot(self):
        queue = TaskQueue(1)
        stuck = asyncio.Event()

        async def hang(signal):
            await stuck.wait()

        async def quick(signal):
            return 42

        running = queue.submit(hang)
        waiting = queue.submit(quick)
        await asyncio.sleep(0)
        assert running.status == TaskStatus.RUNNING

        assert queue.cancel(running.id)
        assert running.signal.aborted
        assert waiting.status == TaskStatus.RUNNING
        assert await waiting.wait() == 42
        with pytest.raises(Cancelled):
            await running.wait()

    @pytest.mark.asyncio
    async def test_cancel_settled_item(self):
        queue = TaskQueue()

        async def work(signal):
            return 1

        handle = queue.submit(work)
        await handle.wait()
        assert not queue.cancel(handle.id)

    @pytest.mark.asyncio
    async def test_failure_propagates(self):
        queue = TaskQueue()

        async def broken(signal):
            raise RuntimeError("service down")

        handle = queue.submit(broken)
        with pytest.raises(RuntimeError, match="service down"):
            await handle.wait()
        assert handle.status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_cooperative_abort_counts_as_cancelled(self):
        queue = TaskQueue()

        async def polite(signal):
            signal.abort()
            signal.raise_if_aborted()

        handle = queue.submit(polite)
        with pytest.raises(Cancelled):
            await handle.wait()
        assert handle.status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_owner(self):
        queue = TaskQueue(1)
        gate = asyncio.Event()

        async def wait_gate(signal):
            await gate.wait()

        queue.submit(wait_gate, owner="a")
        queue.submit(wait_gate, owner="a")
        other = queue.submit(wait_gate, owner="b")

        assert queue.cancel_owner("a") == 2
        gate.set()
        await other.wait()
        assert other.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queue_status_and_raising_limit(self):
        queue = TaskQueue(1)
        gate = asyncio.Event()

        async def wait_gate(signal):
            await gate.wait()

        for i in range(3):
            queue.submit(wait_gate, label=f"job {i}")

        status = queue.get_queue_status()
        assert [s["status"] for s in status] == ["RUNNING", "QUEUED", "QUEUED"]
        assert status[1]["label"] == "job 1"

        queue.limit = 3
        assert queue.running_count == 3
        gate.set()
        await queue.join()
        assert queue.get_queue_status() == []
