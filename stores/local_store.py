"""Filesystem-backed JSON store used when PostgreSQL is unreachable.

Every write goes to a temporary file in the target directory and is then
renamed over the target, so readers see either the old or the new document.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipelines.crawler import CrawlResult
from .base import (
    Business,
    Clock,
    CrawlJob,
    CrawlJobStatus,
    Dataset,
    DatasetCrawlSummary,
    DatasetSnapshot,
    DEFAULT_PAGES_LIMIT,
    Store,
    StoreError,
    User,
)

logger = logging.getLogger(__name__)

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


def _is_safe_id(value: Any) -> bool:
    value = str(value)
    return bool(SAFE_ID_RE.match(value)) and value not in ('.', '..')


def _safe_id(value: str) -> str:
    value = str(value)
    if not _is_safe_id(value):
        raise ValueError(f"Unsafe identifier for local storage: {value!r}")
    return value


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StoreError(f"Corrupt local document {path}: {e}") from e


class LocalStore(Store):
    """Store backed by JSON documents under one root directory."""

    name = 'local'

    def __init__(self, root: str = '.local-persistence', clock: Optional[Clock] = None):
        super().__init__(clock)
        self.root = Path(root)
        self._lock = asyncio.Lock()

    # Paths
    def _users_path(self) -> Path:
        return self.root / 'users.json'

    def _datasets_path(self) -> Path:
        return self.root / 'datasets.json'

    def _exports_path(self) -> Path:
        return self.root / 'exports.json'

    def _usage_path(self) -> Path:
        return self.root / 'usage.json'

    def _dataset_dir(self, dataset_id: str) -> Path:
        return self.root / 'datasets' / _safe_id(dataset_id)

    def _crawl_dir(self, dataset_id: str) -> Path:
        return self.root / 'crawls' / _safe_id(dataset_id)

    def _snapshot_dir(self) -> Path:
        return self.root / 'snapshots'

    async def health_check(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return os.access(self.root, os.W_OK)
        except OSError as e:
            logger.warning(f"Local store at {self.root} is not usable: {e}")
            return False

    # Users and usage
    async def get_user(self, user_id: str) -> Optional[User]:
        users = read_json(self._users_path(), {})
        if user_id in users:
            return User.from_dict(users[user_id])
        return User(id=user_id, plan='demo', created_at=self.now())

    async def save_user(self, user: User) -> User:
        async with self._lock:
            users = read_json(self._users_path(), {})
            if user.created_at is None:
                user.created_at = self.now()
            users[user.id] = user.to_dict()
            atomic_write_json(self._users_path(), users)
        return user

    async def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> Dict[str, int]:
        month = month or self.now().strftime('%Y-%m')
        usage = read_json(self._usage_path(), {})
        return dict(usage.get(user_id, {}).get(month, {}))

    async def increment_usage(self, user_id: str, field_name: str, amount: int = 1) -> Dict[str, int]:
        month = self.now().strftime('%Y-%m')
        async with self._lock:
            usage = read_json(self._usage_path(), {})
            counters = usage.setdefault(user_id, {}).setdefault(month, {})
            counters[field_name] = counters.get(field_name, 0) + amount
            atomic_write_json(self._usage_path(), usage)
            return dict(counters)

    # Datasets and businesses
    async def save_dataset(self, dataset: Dataset) -> Dataset:
        async with self._lock:
            datasets = read_json(self._datasets_path(), {})
            if dataset.created_at is None:
                dataset.created_at = self.now()
            datasets[dataset.id] = dataset.to_dict()
            atomic_write_json(self._datasets_path(), datasets)
        return dataset

    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        datasets = read_json(self._datasets_path(), {})
        data = datasets.get(dataset_id)
        return Dataset.from_dict(data) if data else None

    async def list_datasets(self, user_id: Optional[str] = None) -> List[Dataset]:
        datasets = [Dataset.from_dict(d) for d in read_json(self._datasets_path(), {}).values()]
        if user_id is not None:
            datasets = [d for d in datasets if d.user_id == user_id]
        return sorted(datasets, key=lambda d: d.created_at.isoformat() if d.created_at else '')

    async def get_latest_dataset(self, user_id: str) -> Optional[Dataset]:
        datasets = await self.list_datasets(user_id)
        return datasets[-1] if datasets else None

    async def save_businesses(self, dataset_id: str, businesses: List[Business]) -> None:
        async with self._lock:
            atomic_write_json(self._dataset_dir(dataset_id) / 'businesses.json',
                              [b.to_dict() for b in businesses])

    async def list_businesses(self, dataset_id: str) -> List[Business]:
        rows = read_json(self._dataset_dir(dataset_id) / 'businesses.json', [])
        return [Business.from_dict(row) for row in rows]

    # Snapshots
    async def create_dataset_snapshot(self, dataset_id: str, user_id: str,
                                      data: Dict[str, Any]) -> DatasetSnapshot:
        snapshot = DatasetSnapshot.create(dataset_id, user_id, data, created_at=self.now())
        async with self._lock:
            atomic_write_json(self._snapshot_dir() / f"{snapshot.id}.json", snapshot.to_dict())
        logger.info(f"Created local snapshot {snapshot.id} for dataset {dataset_id}")
        return snapshot

    async def get_dataset_snapshot(self, dataset_id: str) -> Optional[DatasetSnapshot]:
        directory = self._snapshot_dir()
        if not directory.exists():
            return None
        newest: Optional[DatasetSnapshot] = None
        for path in directory.glob('*.json'):
            data = read_json(path)
            if not data or data.get('dataset_id') != dataset_id:
                continue
            snapshot = DatasetSnapshot.from_dict(data)
            if newest is None or snapshot.created_at > newest.created_at:
                newest = snapshot
        return newest

    # Crawl jobs and pages
    async def create_crawl_job(self, dataset_id: str, business_id: str, website_url: str,
                               max_depth: int = 2, pages_limit: int = DEFAULT_PAGES_LIMIT) -> CrawlJob:
        job = CrawlJob(
            id=str(uuid.uuid4()),
            dataset_id=dataset_id,
            business_id=str(business_id),
            website_url=website_url,
            status=CrawlJobStatus.QUEUED,
            max_depth=max_depth,
            pages_limit=pages_limit,
            created_at=self.now(),
        )
        async with self._lock:
            atomic_write_json(self._crawl_dir(dataset_id) / 'jobs' / f"{job.id}.json", job.to_dict())
        return job

    async def get_crawl_job(self, job_id: str) -> Optional[CrawlJob]:
        if not _is_safe_id(job_id):
            return None
        for path in (self.root / 'crawls').glob(f"*/jobs/{job_id}.json"):
            return CrawlJob.from_dict(read_json(path))
        return None

    async def update_crawl_job(self, job: CrawlJob) -> CrawlJob:
        async with self._lock:
            atomic_write_json(self._crawl_dir(job.dataset_id) / 'jobs' / f"{_safe_id(job.id)}.json",
                              job.to_dict())
        return job

    async def list_crawl_jobs(self, dataset_id: str) -> List[CrawlJob]:
        directory = self._crawl_dir(dataset_id) / 'jobs'
        if not directory.exists():
            return []
        jobs = [CrawlJob.from_dict(read_json(path)) for path in directory.glob('*.json')]
        return sorted(jobs, key=lambda j: j.created_at.isoformat() if j.created_at else '')

    async def save_page(self, crawl_job_id: str, page: Dict[str, Any]) -> str:
        page_id = str(uuid.uuid4())
        path = self.root / 'pages' / f"{_safe_id(crawl_job_id)}.json"
        async with self._lock:
            pages = read_json(path, [])
            pages.append({'id': page_id, 'crawl_job_id': crawl_job_id, **page})
            atomic_write_json(path, pages)
        return page_id

    async def save_contacts(self, dataset_id: str, contacts: List[Dict[str, Any]]) -> int:
        path = self._dataset_dir(dataset_id) / 'contacts.json'
        async with self._lock:
            existing = read_json(path, [])
            merged = {
                (c.get('business_id'), c.get('kind'), c.get('value'), c.get('source_url')): c
                for c in existing
            }
            for contact in contacts:
                key = (contact.get('business_id'), contact.get('kind'),
                       contact.get('value'), contact.get('source_url'))
                merged[key] = contact
            atomic_write_json(path, list(merged.values()))
        return len(contacts)

    # Crawl results
    async def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        directory = self._crawl_dir(result.dataset_id)
        path = directory / f"{_safe_id(result.business_id)}.json"
        now = self.now()

        async with self._lock:
            existing = read_json(path)
            created_at = CrawlResult.from_dict(existing).created_at if existing else None
            result.created_at = created_at or now
            result.updated_at = now
            atomic_write_json(path, result.to_dict())

            index = read_json(directory / 'index.json', {})
            index[result.business_id] = result.crawl_status.value
            atomic_write_json(directory / 'index.json', index)
        return result

    async def get_crawl_result(self, business_id: str, dataset_id: str) -> Optional[CrawlResult]:
        if not (_is_safe_id(business_id) and _is_safe_id(dataset_id)):
            return None
        data = read_json(self._crawl_dir(dataset_id) / f"{_safe_id(business_id)}.json")
        return CrawlResult.from_dict(data) if data else None

    async def list_crawl_results(self, dataset_id: str) -> List[CrawlResult]:
        directory = self._crawl_dir(dataset_id)
        index = read_json(directory / 'index.json', {})
        results = []
        for business_id in index:
            data = read_json(directory / f"{_safe_id(business_id)}.json")
            if data:
                results.append(CrawlResult.from_dict(data))
        return results

    async def get_crawl_index(self, dataset_id: str) -> Dict[str, str]:
        return read_json(self._crawl_dir(dataset_id) / 'index.json', {})

    async def save_crawl_summary(self, summary: DatasetCrawlSummary) -> None:
        async with self._lock:
            atomic_write_json(self._crawl_dir(summary.dataset_id) / 'summary.json', summary.to_dict())

    async def get_crawl_summary(self, dataset_id: str) -> Optional[DatasetCrawlSummary]:
        data = read_json(self._crawl_dir(dataset_id) / 'summary.json')
        return DatasetCrawlSummary.from_dict(data) if data else None

    # Exports
    async def record_export(self, user_id: str, dataset_id: str, rows: int, watermark: str) -> None:
        async with self._lock:
            exports = read_json(self._exports_path(), [])
            exports.append({
                'id': str(uuid.uuid4()),
                'user_id': user_id,
                'dataset_id': dataset_id,
                'rows': rows,
                'watermark': watermark,
                'created_at': self.now().isoformat(),
            })
            atomic_write_json(self._exports_path(), exports)
