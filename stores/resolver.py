"""Primary/fallback store selection.

``StoreResolver`` is a small state machine: unresolved -> primary, or
unresolved -> fallback when the primary's health probe fails. The choice is
cached for ``health_ttl`` seconds; once stale, resolution starts again from
the primary so a recovered database is picked up on the next probe.

``ResilientStore`` exposes the ``Store`` contract on top of the resolver, so
callers never need to know which backend answered.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import asyncpg

from config.database import StoreConfig
from observability.prometheus_metrics import store_failures, store_resolutions
from pipelines.crawler import CrawlResult
from .base import (
    Business,
    CrawlJob,
    Dataset,
    DatasetCrawlSummary,
    DatasetSnapshot,
    DEFAULT_PAGES_LIMIT,
    Store,
    StoreError,
    StoreUnavailableError,
    User,
)
from .local_store import LocalStore
from .postgres_store import PostgresStore

logger = logging.getLogger(__name__)

# Errors that mean "this backend is gone", as opposed to a bad query
BACKEND_ERRORS = (StoreError, OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError)

# Safe to repeat on another backend: reads and keyed upserts. Appends and
# counters are not, since the failed backend may already have committed them.
RETRYABLE_OPERATIONS = frozenset({
    'get_user', 'save_user', 'get_monthly_usage',
    'save_dataset', 'get_dataset', 'get_latest_dataset', 'list_datasets',
    'save_businesses', 'list_businesses', 'get_dataset_snapshot',
    'get_crawl_job', 'update_crawl_job', 'list_crawl_jobs', 'save_contacts',
    'upsert_crawl_result', 'get_crawl_result', 'list_crawl_results',
    'save_crawl_summary', 'get_crawl_summary', 'get_export_rows',
})


class StoreResolver:
    """Chooses between a primary and a fallback store using cached health checks."""

    def __init__(self, primary: Optional[Store], fallback: Store,
                 health_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.primary = primary
        self.fallback = fallback
        self.health_ttl = health_ttl
        self._clock = clock
        self._cached: Optional[Store] = None
        self._checked_at = 0.0

    @classmethod
    def from_config(cls, config: StoreConfig) -> 'StoreResolver':
        primary = None
        if config.postgres_enabled:
            primary = PostgresStore(config.postgres, health_timeout=config.health_timeout_seconds)
        return cls(primary, LocalStore(config.local_dir), health_ttl=config.health_ttl_seconds)

    @property
    def state(self) -> str:
        """'unresolved', 'primary' or 'fallback'."""
        if self._cached is None:
            return 'unresolved'
        return 'primary' if self._cached is self.primary else 'fallback'

    @property
    def cached(self) -> Optional[Store]:
        return self._cached

    def _is_fresh(self) -> bool:
        return self._cached is not None and (self._clock() - self._checked_at) < self.health_ttl

    async def resolve(self) -> Store:
        """Return the store to use, probing health only when the cache is stale.

        Raises:
            StoreUnavailableError: If neither backend passes its health check
        """
        if self._is_fresh():
            return self._cached

        previous = self.state
        if self.primary is not None and await self.primary.health_check():
            chosen = self.primary
        elif await self.fallback.health_check():
            chosen = self.fallback
        else:
            self._cached = None
            logger.error("No store backend is available")
            raise StoreUnavailableError("Both primary and fallback stores are unavailable")

        self._cached = chosen
        self._checked_at = self._clock()
        store_resolutions.labels(backend=chosen.name).inc()

        if self.state != previous:
            if chosen is self.fallback and self.primary is not None:
                logger.warning(f"Primary store unhealthy, using fallback store '{chosen.name}'")
            else:
                logger.info(f"Using store '{chosen.name}'")
        return chosen

    def invalidate(self, reason: str = '') -> None:
        """Forget the cached choice; the next call re-probes from the primary."""
        if self._cached is not None:
            logger.warning(f"Invalidating cached store '{self._cached.name}': {reason}")
        self._cached = None
        self._checked_at = 0.0

    async def close(self) -> None:
        if self.primary is not None:
            await self.primary.close()
        await self.fallback.close()


class ResilientStore(Store):
    """``Store`` facade that routes every call through a ``StoreResolver``.

    A backend error invalidates the resolver cache. Operations listed in
    ``RETRYABLE_OPERATIONS`` are then retried once on whichever backend
    resolves next; any other operation re-raises so it is never applied twice.
    """

    def __init__(self, resolver: StoreResolver):
        super().__init__()
        self.resolver = resolver

    @property
    def name(self) -> str:
        cached = self.resolver.cached
        return cached.name if cached else 'unresolved'

    async def _call(self, operation: str, *args, **kwargs) -> Any:
        store = await self.resolver.resolve()
        try:
            return await getattr(store, operation)(*args, **kwargs)
        except StoreUnavailableError:
            raise
        except BACKEND_ERRORS as e:
            logger.warning(f"Store '{store.name}' failed during {operation}: {e}")
            store_failures.labels(backend=store.name).inc()
            self.resolver.invalidate(f"{operation} failed: {e}")
            if operation not in RETRYABLE_OPERATIONS:
                raise

        store = await self.resolver.resolve()
        return await getattr(store, operation)(*args, **kwargs)

    async def health_check(self) -> bool:
        try:
            await self.resolver.resolve()
            return True
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self.resolver.close()

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._call('get_user', user_id)

    async def save_user(self, user: User) -> User:
        return await self._call('save_user', user)

    async def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> Dict[str, int]:
        return await self._call('get_monthly_usage', user_id, month)

    async def increment_usage(self, user_id: str, field_name: str, amount: int = 1) -> Dict[str, int]:
        return await self._call('increment_usage', user_id, field_name, amount)

    async def save_dataset(self, dataset: Dataset) -> Dataset:
        return await self._call('save_dataset', dataset)

    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        return await self._call('get_dataset', dataset_id)

    async def get_latest_dataset(self, user_id: str) -> Optional[Dataset]:
        return await self._call('get_latest_dataset', user_id)

    async def list_datasets(self, user_id: Optional[str] = None) -> List[Dataset]:
        return await self._call('list_datasets', user_id)

    async def save_businesses(self, dataset_id: str, businesses: List[Business]) -> None:
        return await self._call('save_businesses', dataset_id, businesses)

    async def list_businesses(self, dataset_id: str) -> List[Business]:
        return await self._call('list_businesses', dataset_id)

    async def create_dataset_snapshot(self, dataset_id: str, user_id: str,
                                      data: Dict[str, Any]) -> DatasetSnapshot:
        return await self._call('create_dataset_snapshot', dataset_id, user_id, data)

    async def get_dataset_snapshot(self, dataset_id: str) -> Optional[DatasetSnapshot]:
        return await self._call('get_dataset_snapshot', dataset_id)

    async def create_crawl_job(self, dataset_id: str, business_id: str, website_url: str,
                               max_depth: int = 2, pages_limit: int = DEFAULT_PAGES_LIMIT) -> CrawlJob:
        return await self._call('create_crawl_job', dataset_id, business_id, website_url,
                                max_depth=max_depth, pages_limit=pages_limit)

    async def get_crawl_job(self, job_id: str) -> Optional[CrawlJob]:
        return await self._call('get_crawl_job', job_id)

    async def update_crawl_job(self, job: CrawlJob) -> CrawlJob:
        return await self._call('update_crawl_job', job)

    async def list_crawl_jobs(self, dataset_id: str) -> List[CrawlJob]:
        return await self._call('list_crawl_jobs', dataset_id)

    async def save_page(self, crawl_job_id: str, page: Dict[str, Any]) -> str:
        return await self._call('save_page', crawl_job_id, page)

    async def save_contacts(self, dataset_id: str, contacts: List[Dict[str, Any]]) -> int:
        return await self._call('save_contacts', dataset_id, contacts)

    async def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        return await self._call('upsert_crawl_result', result)

    async def get_crawl_result(self, business_id: str, dataset_id: str) -> Optional[CrawlResult]:
        return await self._call('get_crawl_result', business_id, dataset_id)

    async def list_crawl_results(self, dataset_id: str) -> List[CrawlResult]:
        return await self._call('list_crawl_results', dataset_id)

    async def save_crawl_summary(self, summary: DatasetCrawlSummary) -> None:
        return await self._call('save_crawl_summary', summary)

    async def get_crawl_summary(self, dataset_id: str) -> Optional[DatasetCrawlSummary]:
        return await self._call('get_crawl_summary', dataset_id)

    async def get_export_rows(self, dataset_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._call('get_export_rows', dataset_id, limit)

    async def record_export(self, user_id: str, dataset_id: str, rows: int, watermark: str) -> None:
        return await self._call('record_export', user_id, dataset_id, rows, watermark)
