"""Snapshot-aware dataset resolution.

A snapshot younger than ``SNAPSHOT_TTL`` is served as-is. An expired or
missing snapshot schedules a re-discovery on the ``DiscoveryQueue`` and the
call returns immediately with ``should_queue_discovery`` set.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pipelines.crawler import utcnow
from stores.base import Dataset, DatasetSnapshot, Store
from .discovery_queue import DiscoveryJob, DiscoveryQueue

logger = logging.getLogger(__name__)


@dataclass
class DatasetResolution:
    dataset: Optional[Dataset] = None
    snapshot: Optional[DatasetSnapshot] = None
    should_queue_discovery: bool = False
    discovery_job: Optional[DiscoveryJob] = None

    @property
    def reused(self) -> bool:
        return self.snapshot is not None and not self.should_queue_discovery

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dataset': self.dataset.to_dict() if self.dataset else None,
            'snapshot': self.snapshot.to_dict() if self.snapshot else None,
            'reused': self.reused,
            'should_queue_discovery': self.should_queue_discovery,
            'discovery_job': self.discovery_job.to_dict() if self.discovery_job else None,
        }


class DatasetResolver:
    """Decides whether a dataset can be served from its snapshot."""

    def __init__(self, store: Store, queue: DiscoveryQueue,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.queue = queue
        self._clock = clock

    async def resolve(self, user_id: str, dataset_id: Optional[str] = None) -> DatasetResolution:
        """Resolve ``dataset_id`` (or the user's latest dataset).

        Args:
            user_id: Owner of the dataset
            dataset_id: Dataset to resolve; defaults to the user's newest dataset

        Returns:
            DatasetResolution. ``dataset`` is None when nothing matches.
        """
        if dataset_id:
            dataset = await self.store.get_dataset(dataset_id)
        else:
            dataset = await self.store.get_latest_dataset(user_id)

        if dataset is None:
            logger.info(f"No dataset to resolve for user {user_id} (requested {dataset_id!r})")
            return DatasetResolution()

        snapshot = await self.store.get_dataset_snapshot(dataset.id)
        now = self._clock()

        if snapshot is not None and snapshot.is_fresh(now):
            age_days = (now - snapshot.created_at).total_seconds() / 86400
            logger.info(f"Reusing snapshot {snapshot.id} for dataset {dataset.id} ({age_days:.1f} days old)")
            return DatasetResolution(dataset=dataset, snapshot=snapshot)

        reason = 'snapshot_expired' if snapshot is not None else 'snapshot_missing'
        job = self.queue.push(dataset.id, user_id, reason=reason)
        logger.info(f"Dataset {dataset.id} has no fresh snapshot ({reason}), discovery queued")
        return DatasetResolution(dataset=dataset, should_queue_discovery=True, discovery_job=job)
