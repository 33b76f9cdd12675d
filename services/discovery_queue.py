"""In-process re-discovery queue.

Pushes never block. A single background task drains the queue one job at a
time, so at most one discovery runs per process. The queue is bounded: when
full, the oldest pending job is dropped.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from observability.prometheus_metrics import discovery_jobs, discovery_queue_depth
from pipelines.crawler import format_dt, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryJob:
    """A request to refresh one dataset."""
    dataset_id: str
    user_id: str
    reason: str = 'snapshot_expired'
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'dataset_id': self.dataset_id,
            'user_id': self.user_id,
            'reason': self.reason,
            'enqueued_at': format_dt(self.enqueued_at),
        }


DiscoveryHandler = Callable[[DiscoveryJob], Awaitable[Any]]


class DiscoveryQueue:
    """Bounded FIFO of discovery jobs with one consumer task."""

    def __init__(self, handler: Optional[DiscoveryHandler] = None, max_size: int = 100):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.handler = handler
        self.max_size = max_size
        self._pending: Deque[DiscoveryJob] = deque()
        self._draining = False
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0
        self.dropped = 0

    def set_handler(self, handler: DiscoveryHandler) -> None:
        self.handler = handler

    @property
    def draining(self) -> bool:
        return self._draining

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, dataset_id: str, user_id: str, reason: str = 'snapshot_expired') -> DiscoveryJob:
        """Queue a discovery job and make sure the consumer is running.

        A job already pending for the same dataset/user is reused.
        """
        for pending in self._pending:
            if pending.dataset_id == dataset_id and pending.user_id == user_id:
                logger.debug(f"Discovery for dataset {dataset_id} already pending")
                return pending

        if len(self._pending) >= self.max_size:
            dropped = self._pending.popleft()
            self.dropped += 1
            discovery_jobs.labels(outcome='dropped').inc()
            logger.warning(f"Discovery queue full ({self.max_size}), dropped job for dataset {dropped.dataset_id}")

        job = DiscoveryJob(dataset_id=dataset_id, user_id=user_id, reason=reason)
        self._pending.append(job)
        discovery_queue_depth.set(len(self._pending))
        logger.info(f"Queued discovery for dataset {dataset_id} ({reason}), {len(self._pending)} pending")

        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())
        return job

    async def _drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._pending:
                job = self._pending.popleft()
                discovery_queue_depth.set(len(self._pending))
                await self._run(job)
        finally:
            self._draining = False

    async def _run(self, job: DiscoveryJob) -> None:
        if self.handler is None:
            logger.warning(f"No discovery handler registered, skipping dataset {job.dataset_id}")
            discovery_jobs.labels(outcome='skipped').inc()
            return
        try:
            logger.info(f"Discovery job {job.id}: refreshing dataset {job.dataset_id}")
            await self.handler(job)
            self.processed += 1
            discovery_jobs.labels(outcome='success').inc()
        except Exception as e:
            self.failed += 1
            discovery_jobs.labels(outcome='failed').inc()
            logger.exception(f"Discovery job {job.id} for dataset {job.dataset_id} failed: {e}")

    async def wait_idle(self) -> None:
        """Wait until the queue has been drained."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def close(self) -> None:
        """Drop pending jobs and cancel the consumer."""
        self._pending.clear()
        discovery_queue_depth.set(0)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def stats(self) -> Dict[str, Any]:
        return {
            'pending': len(self._pending),
            'draining': self._draining,
            'processed': self.processed,
            'failed': self.failed,
            'dropped': self.dropped,
            'max_size': self.max_size,
        }
