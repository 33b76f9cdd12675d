"""Tests for snapshot reuse and discovery scheduling."""

from datetime import datetime, timedelta, timezone

import pytest

from services.dataset_resolver import DatasetResolver
from services.discovery_queue import DiscoveryQueue
from stores.base import Dataset
from stores.local_store import LocalStore, atomic_write_json

T0 = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def seeded(tmp_path, clock):
    store = LocalStore(str(tmp_path), clock=clock)
    dataset = Dataset(id="d1", user_id="u1", name="Athens cafes", created_at=T0)
    atomic_write_json(store.root / "datasets.json", {"d1": dataset.to_dict()})
    return store


class TestDatasetResolver:
    @pytest.mark.asyncio
    async def test_fresh_snapshot_is_reused(self, seeded, clock):
        snapshot = await seeded.create_dataset_snapshot("d1", "u1", {"businesses": []})
        queue = DiscoveryQueue()
        resolver = DatasetResolver(seeded, queue, clock=clock)

        clock.now = T0 + timedelta(days=29)
        resolution = await resolver.resolve("u1", "d1")

        assert resolution.dataset.id == "d1"
        assert resolution.snapshot.id == snapshot.id
        assert resolution.reused
        assert not resolution.should_queue_discovery
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_expired_snapshot_queues_discovery(self, seeded, clock):
        await seeded.create_dataset_snapshot("d1", "u1", {"businesses": []})
        queue = DiscoveryQueue()
        resolver = DatasetResolver(seeded, queue, clock=clock)

        clock.now = T0 + timedelta(days=31)
        resolution = await resolver.resolve("u1", "d1")

        assert resolution.should_queue_discovery
        assert resolution.snapshot is None
        assert resolution.discovery_job.reason == "snapshot_expired"
        assert resolution.to_dict()["reused"] is False
        await queue.close()

    @pytest.mark.asyncio
    async def test_missing_snapshot_queues_discovery(self, seeded, clock):
        handled = []

        async def handler(job):
            handled.append((job.dataset_id, job.reason))

        queue = DiscoveryQueue(handler)
        resolver = DatasetResolver(seeded, queue, clock=clock)
        resolution = await resolver.resolve("u1")

        assert resolution.dataset.id == "d1"
        assert resolution.should_queue_discovery
        await queue.wait_idle()
        assert handled == [("d1", "snapshot_missing")]

    @pytest.mark.asyncio
    async def test_unknown_dataset(self, seeded, clock):
        queue = DiscoveryQueue()
        resolution = await DatasetResolver(seeded, queue, clock=clock).resolve("u2")

        assert resolution.dataset is None
        assert resolution.snapshot is None
        assert not resolution.should_queue_discovery
        assert resolution.to_dict()["dataset"] is None
        assert len(queue) == 0
