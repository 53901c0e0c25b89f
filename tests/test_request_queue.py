"""Tests for RequestQueue: concurrency bound, FIFO admission and slot hand-off."""

import asyncio

import pytest

from cakemail_mcp.request_queue import RequestQueue


class Gate:
    """An operation that blocks until released, recording start order."""

    def __init__(self, name, started):
        self.name = name
        self.started = started
        self.release = asyncio.Event()
        self.error = None

    async def __call__(self):
        self.started.append(self.name)
        await self.release.wait()
        if self.error:
            raise self.error
        return self.name


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestRequestQueue:
    @pytest.mark.asyncio
    async def test_one_over_the_limit_is_queued(self):
        queue = RequestQueue(max_concurrent=2)
        started = []
        gates = [Gate(i, started) for i in range(3)]
        tasks = [asyncio.create_task(queue.add(gate)) for gate in gates]
        await settle()

        assert queue.get_stats() == {"active": 2, "queued": 1}
        assert started == [0, 1]

        gates[0].release.set()
        assert await tasks[0] == 0
        await settle()
        assert started == [0, 1, 2]
        assert queue.get_stats() == {"active": 2, "queued": 0}

        gates[1].release.set()
        gates[2].release.set()
        assert await asyncio.gather(*tasks[1:]) == [1, 2]
        assert queue.get_stats() == {"active": 0, "queued": 0}

    @pytest.mark.asyncio
    async def test_failure_also_admits_next(self):
        queue = RequestQueue(max_concurrent=1)
        started = []
        first, second = Gate("first", started), Gate("second", started)
        first.error = RuntimeError("boom")
        t1 = asyncio.create_task(queue.add(first))
        t2 = asyncio.create_task(queue.add(second))
        await settle()
        assert started == ["first"]

        first.release.set()
        with pytest.raises(RuntimeError):
            await t1
        await settle()
        assert started == ["first", "second"]

        second.release.set()
        assert await t2 == "second"

    @pytest.mark.asyncio
    async def test_queued_operations_start_in_fifo_order(self):
        queue = RequestQueue(max_concurrent=1)
        started = []
        gates = [Gate(i, started) for i in range(5)]
        tasks = [asyncio.create_task(queue.add(gate)) for gate in gates]
        await settle()
        for gate in gates:
            gate.release.set()
            await settle()
        await asyncio.gather(*tasks)
        assert started == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_active_count_never_exceeds_limit(self):
        queue = RequestQueue(max_concurrent=3)
        peak = 0

        async def op():
            nonlocal peak
            peak = max(peak, queue.get_stats()["active"])
            await asyncio.sleep(0)
            return True

        results = await asyncio.gather(*(queue.add(op) for _ in range(20)))
        assert all(results)
        assert peak <= 3
        assert queue.get_stats() == {"active": 0, "queued": 0}

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_the_queue(self):
        queue = RequestQueue(max_concurrent=1)
        started = []
        blocker, skipped, last = Gate("blocker", started), Gate("skipped", started), Gate("last", started)
        t1 = asyncio.create_task(queue.add(blocker))
        t2 = asyncio.create_task(queue.add(skipped))
        t3 = asyncio.create_task(queue.add(last))
        await settle()
        assert queue.get_stats() == {"active": 1, "queued": 2}

        t2.cancel()
        await settle()
        assert queue.get_stats() == {"active": 1, "queued": 1}

        blocker.release.set()
        last.release.set()
        await asyncio.gather(t1, t3)
        assert started == ["blocker", "last"]
        assert queue.get_stats() == {"active": 0, "queued": 0}

    def test_rejects_invalid_limit(self):
        with pytest.raises(ValueError):
            RequestQueue(max_concurrent=0)
