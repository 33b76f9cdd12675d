"""Dataset-wide crawl enqueue and worker loop.

``trigger_crawl`` validates a request, applies the plan gate and creates one
queued ``CrawlJob`` per business with a website. ``run_jobs`` then works
through the queued jobs one at a time, persisting pages, contacts, results,
a dataset summary and a fresh snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.crawl_config import CrawlConfig, get_crawl_config
from observability.logging import get_structured_logger
from pipelines.crawler import ContactCrawler, CrawlResult, PageRecord, utcnow
from pipelines.plan_gate import CrawlGate, apply_crawl_gate, get_plan_limits
from stores.base import (
    CrawlJob,
    CrawlJobStatus,
    DatasetCrawlSummary,
    Store,
    StoreUnavailableError,
)
from .crawl_results import upsert_crawl_result
from .dataset_resolver import DatasetResolver
from .discovery_queue import DiscoveryJob

log = get_structured_logger(__name__)

ACTIVE_JOB_STATUSES = (CrawlJobStatus.QUEUED, CrawlJobStatus.RUNNING)


class CrawlRequestError(ValueError):
    """A crawl request was rejected before any job was created."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class CrawlTrigger:
    """Outcome of ``CrawlRunner.trigger_crawl``."""
    dataset_id: str
    user_id: str
    gate: CrawlGate
    jobs: List[CrawlJob] = field(default_factory=list)
    total_available: int = 0
    skipped: int = 0

    @property
    def job_ids(self) -> List[str]:
        return [job.id for job in self.jobs]

    def to_response(self) -> Dict[str, Any]:
        """Body returned by ``POST /crawl``."""
        created = len(self.jobs)
        message = f"Created {created} crawl job(s)."
        if self.skipped:
            message += f" Skipped {self.skipped} business(es) with a crawl already in progress."
        return {
            'data': {
                'job_ids': self.job_ids,
                'jobs_created': created,
                'max_depth': self.gate.max_depth,
                'pages_limit': self.gate.pages_limit,
                'message': message,
            },
            'meta': {
                'plan_id': self.gate.plan,
                'gated': self.gate.gated,
                'gate_reason': self.gate.gate_reason,
                'upgrade_hint': self.gate.upgrade_hint,
                'total_available': self.total_available,
                'total_returned': created,
            },
        }


def _contact_rows(result: CrawlResult) -> List[Dict[str, Any]]:
    rows = []
    for kind, hits in (('email', result.emails), ('phone', result.phones)):
        for hit in hits:
            rows.append({
                'business_id': result.business_id,
                'kind': kind,
                'value': hit.value,
                'source_url': hit.source_url,
                'context': hit.context,
                'page_type': hit.page_type,
                'confidence': hit.confidence,
            })
    return rows


class CrawlRunner:
    """Turns crawl requests into jobs and runs them sequentially."""

    def __init__(self, store: Store, crawler: ContactCrawler,
                 config: Optional[CrawlConfig] = None,
                 dataset_resolver: Optional[DatasetResolver] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.crawler = crawler
        self.config = config or get_crawl_config()
        self.dataset_resolver = dataset_resolver
        self._clock = clock
        self.recent_job_window = timedelta(hours=self.config.get_recent_job_window_hours())
        self.default_max_depth = self.config.get_default_max_depth()

    async def trigger_crawl(self, user_id: str, dataset_id: Optional[str],
                            max_depth: Optional[int] = None,
                            pages_limit: Optional[int] = None) -> CrawlTrigger:
        """Validate a crawl request and enqueue jobs for it.

        Args:
            user_id: Requesting user
            dataset_id: Dataset whose businesses should be crawled
            max_depth: Requested depth (defaults to the configured depth)
            pages_limit: Requested pages per site (defaults to the plan limit)

        Returns:
            CrawlTrigger with the created jobs and gating details

        Raises:
            CrawlRequestError: For invalid input, missing or foreign datasets,
                datasets without websites and exhausted monthly usage
            StoreUnavailableError: If no store backend is reachable
        """
        if not dataset_id:
            raise CrawlRequestError("dataset_id is required", 400)

        requested_depth = self.default_max_depth if max_depth is None else max_depth
        if isinstance(requested_depth, bool) or not isinstance(requested_depth, int) or requested_depth < 0:
            raise CrawlRequestError(f"max_depth must be a non-negative integer, got {max_depth!r}", 400)
        if pages_limit is not None and (isinstance(pages_limit, bool) or not isinstance(pages_limit, int)
                                        or pages_limit < 1):
            raise CrawlRequestError(f"pages_limit must be a positive integer, got {pages_limit!r}", 400)

        dataset = await self.store.get_dataset(dataset_id)
        if dataset is None:
            raise CrawlRequestError("Dataset not found", 404)
        if dataset.user_id != user_id:
            raise CrawlRequestError("Access denied: You do not own this dataset", 403)

        user = await self.store.get_user(user_id)
        plan = user.plan if user else 'demo'
        try:
            limits = get_plan_limits(plan)
        except ValueError as e:
            raise CrawlRequestError(str(e), 400) from e

        usage = await self.store.get_monthly_usage(user_id)
        if usage.get('crawls', 0) >= limits.crawls_per_month:
            raise CrawlRequestError(
                f"Monthly crawl limit reached ({limits.crawls_per_month} crawls on the {plan} plan)", 429)

        gate = apply_crawl_gate(plan, requested_depth, pages_limit)

        businesses = [b for b in await self.store.list_businesses(dataset_id) if b.website]
        if not businesses:
            raise CrawlRequestError("No businesses with websites found in this dataset", 400)

        now = self._clock()
        recent = {
            job.business_id for job in await self.store.list_crawl_jobs(dataset_id)
            if job.status in ACTIVE_JOB_STATUSES
            and job.created_at is not None and now - job.created_at < self.recent_job_window
        }

        trigger = CrawlTrigger(dataset_id=dataset_id, user_id=user_id, gate=gate,
                               total_available=len(businesses))
        for business in businesses:
            if str(business.id) in recent:
                trigger.skipped += 1
                continue
            job = await self.store.create_crawl_job(dataset_id, str(business.id), business.website,
                                                    max_depth=gate.max_depth, pages_limit=gate.pages_limit)
            trigger.jobs.append(job)

        log.info("Crawl jobs enqueued", dataset_id=dataset_id, user_id=user_id, plan=plan,
                 jobs_created=len(trigger.jobs), jobs_skipped=trigger.skipped,
                 max_depth=gate.max_depth, pages_limit=gate.pages_limit, gated=gate.gated)
        return trigger

    async def run_jobs(self, dataset_id: str, user_id: str,
                       job_ids: Optional[Iterable[str]] = None) -> DatasetCrawlSummary:
        """Run queued crawl jobs for a dataset, one at a time.

        A failing crawl marks its job failed and the loop moves on.
        ``StoreUnavailableError`` aborts the whole run.
        """
        wanted = set(job_ids) if job_ids is not None else None
        jobs = [
            job for job in await self.store.list_crawl_jobs(dataset_id)
            if job.status == CrawlJobStatus.QUEUED and (wanted is None or job.id in wanted)
        ]
        businesses = await self.store.list_businesses(dataset_id)

        summary = DatasetCrawlSummary(
            dataset_id=dataset_id,
            total_businesses=len(businesses),
            skipped=max(len(businesses) - len(jobs), 0),
            started_at=self._clock(),
        )
        run_log = log.bind(dataset_id=dataset_id, user_id=user_id)
        run_log.info("Starting dataset crawl", jobs=len(jobs))

        for job in jobs:
            await self._run_job(job, summary)

        summary.finished_at = self._clock()
        await self.store.save_crawl_summary(summary)
        if jobs:
            await self.store.increment_usage(user_id, 'crawls')
        await self._snapshot(dataset_id, user_id, summary)

        run_log.info("Dataset crawl finished", crawled=summary.crawled, failed=summary.failed,
                     pages=summary.total_pages, emails=summary.total_emails, phones=summary.total_phones)
        return summary

    async def _run_job(self, job: CrawlJob, summary: DatasetCrawlSummary) -> None:
        job_log = log.bind(dataset_id=job.dataset_id, business_id=job.business_id, job_id=job.id)

        job.status = CrawlJobStatus.RUNNING
        job.attempts += 1
        job.started_at = self._clock()
        await self.store.update_crawl_job(job)
        job_log.info("Crawl job started", website=job.website_url, attempt=job.attempts)

        async def save_page(page: PageRecord) -> None:
            await self.store.save_page(job.id, page.to_dict())

        try:
            result = await self.crawler.crawl(job.business_id, job.website_url, job.max_depth,
                                              job.pages_limit, job.dataset_id, page_sink=save_page)
            result = await upsert_crawl_result(self.store, result)
        except StoreUnavailableError:
            job_log.error("Store unavailable, aborting dataset crawl")
            raise
        except Exception as e:
            job.status = CrawlJobStatus.FAILED
            job.error = str(e)
            job.finished_at = self._clock()
            await self.store.update_crawl_job(job)
            summary.failed += 1
            summary.errors.append({'business_id': job.business_id, 'error': str(e)})
            job_log.exception("Crawl job failed", error=str(e))
            return

        job.status = CrawlJobStatus.SUCCESS
        job.pages_crawled = result.pages_visited
        job.finished_at = self._clock()
        await self.store.update_crawl_job(job)

        summary.crawled += 1
        summary.total_pages += result.pages_visited
        summary.total_emails += len(result.emails)
        summary.total_phones += len(result.phones)

        contacts = _contact_rows(result)
        if contacts:
            await self.store.save_contacts(job.dataset_id, contacts)

        job_log.info("Crawl job finished", status=result.crawl_status.value, pages=result.pages_visited,
                     emails=len(result.emails), phones=len(result.phones))

    async def _snapshot(self, dataset_id: str, user_id: str, summary: DatasetCrawlSummary) -> None:
        businesses = await self.store.list_businesses(dataset_id)
        rows = await self.store.get_export_rows(dataset_id)
        await self.store.create_dataset_snapshot(dataset_id, user_id, {
            'businesses': [b.to_dict() for b in businesses],
            'contacts': rows,
            'summary': summary.to_dict(),
        })

        dataset = await self.store.get_dataset(dataset_id)
        if dataset is not None:
            dataset.last_refreshed_at = self._clock()
            await self.store.save_dataset(dataset)

    async def recrawl_dataset(self, dataset_id: str, user_id: str) -> Optional[DatasetCrawlSummary]:
        """Enqueue and run a full crawl of ``dataset_id``.

        Returns None when the request is rejected or nothing needs crawling.
        """
        try:
            trigger = await self.trigger_crawl(user_id, dataset_id)
        except CrawlRequestError as e:
            log.warning("Recrawl skipped", dataset_id=dataset_id, user_id=user_id,
                        reason=str(e), status_code=e.status_code)
            return None
        if not trigger.jobs:
            log.info("Recrawl found no new jobs", dataset_id=dataset_id, skipped=trigger.skipped)
            return None
        return await self.run_jobs(dataset_id, user_id, trigger.job_ids)

    async def handle_discovery(self, job: DiscoveryJob) -> None:
        """``DiscoveryQueue`` handler."""
        await self.recrawl_dataset(job.dataset_id, job.user_id)

    async def refresh_stale_datasets(self) -> int:
        """Resolve every dataset so that expired snapshots queue re-discovery.

        Returns:
            Number of datasets queued for discovery
        """
        if self.dataset_resolver is None:
            raise RuntimeError("refresh_stale_datasets needs a DatasetResolver")

        queued = 0
        for dataset in await self.store.list_datasets():
            resolution = await self.dataset_resolver.resolve(dataset.user_id, dataset.id)
            if resolution.should_queue_discovery:
                queued += 1
        log.info("Monthly refresh scan finished", queued=queued)
        return queued
