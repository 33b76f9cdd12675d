"""Tests for the in-process discovery queue."""

import asyncio

import pytest

from services.discovery_queue import DiscoveryQueue


class Recorder:
    def __init__(self, delay=0.0, fail_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.seen = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, job):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if job.dataset_id in self.fail_on:
                raise RuntimeError(f"discovery for {job.dataset_id} blew up")
            self.seen.append(job.dataset_id)
        finally:
            self.active -= 1


class TestDiscoveryQueue:
    """Ordering, bounding and failure isolation"""

    @pytest.mark.asyncio
    async def test_jobs_run_in_fifo_order(self):
        handler = Recorder()
        queue = DiscoveryQueue(handler)
        for dataset_id in ("d1", "d2", "d3"):
            queue.push(dataset_id, "u1")

        await queue.wait_idle()
        assert handler.seen == ["d1", "d2", "d3"]
        assert queue.processed == 3
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_single_consumer(self):
        handler = Recorder(delay=0.01)
        queue = DiscoveryQueue(handler)
        for i in range(5):
            queue.push(f"d{i}", "u1")
            await asyncio.sleep(0)

        await queue.wait_idle()
        assert handler.max_active == 1
        assert len(handler.seen) == 5

    @pytest.mark.asyncio
    async def test_duplicate_pending_job_is_reused(self):
        handler = Recorder()
        queue = DiscoveryQueue(handler)
        first = queue.push("d1", "u1")
        second = queue.push("d1", "u1", reason="snapshot_missing")

        assert second is first
        assert len(queue) == 1
        await queue.wait_idle()
        assert handler.seen == ["d1"]

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        handler = Recorder()
        queue = DiscoveryQueue(handler, max_size=2)
        queue.push("d1", "u1")
        queue.push("d2", "u1")
        queue.push("d3", "u1")

        assert queue.dropped == 1
        assert len(queue) == 2
        await queue.wait_idle()
        assert handler.seen == ["d2", "d3"]

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_worker(self):
        handler = Recorder(fail_on={"d2"})
        queue = DiscoveryQueue(handler)
        for dataset_id in ("d1", "d2", "d3"):
            queue.push(dataset_id, "u1")

        await queue.wait_idle()
        assert handler.seen == ["d1", "d3"]
        assert queue.failed == 1
        assert queue.processed == 2
        assert not queue.draining

    @pytest.mark.asyncio
    async def test_push_after_idle_restarts_consumer(self):
        handler = Recorder()
        queue = DiscoveryQueue(handler)
        queue.push("d1", "u1")
        await queue.wait_idle()

        queue.push("d2", "u1")
        await queue.wait_idle()
        assert handler.seen == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_without_handler_jobs_are_skipped(self):
        queue = DiscoveryQueue()
        queue.push("d1", "u1")
        await queue.wait_idle()
        assert queue.processed == 0
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending_work(self):
        handler = Recorder(delay=10)
        queue = DiscoveryQueue(handler)
        queue.push("d1", "u1")
        queue.push("d2", "u1")
        await asyncio.sleep(0.01)

        await queue.close()
        assert len(queue) == 0
        assert handler.seen == []
        assert queue.stats()["pending"] == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            DiscoveryQueue(max_size=0)
