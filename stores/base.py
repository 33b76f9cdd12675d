"""Store contract shared by the PostgreSQL and local JSON backends."""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pipelines.crawler import CrawlResult, format_dt, parse_dt, utcnow
from .identifiers import integer_to_uuid

SNAPSHOT_TTL = timedelta(days=30)
DEFAULT_PAGES_LIMIT = 15

Clock = Callable[[], datetime]


class StoreError(Exception):
    """A backend failed to serve a request."""


class StoreUnavailableError(StoreError):
    """Neither the primary nor the fallback backend is reachable."""


class CrawlJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class User:
    id: str
    plan: str = 'demo'
    email: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'plan': self.plan, 'email': self.email,
                'created_at': format_dt(self.created_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        return cls(id=str(data['id']), plan=data.get('plan') or 'demo', email=data.get('email'),
                   created_at=parse_dt(data.get('created_at')))


@dataclass
class Dataset:
    id: str
    user_id: str
    name: str = ''
    created_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'user_id': self.user_id, 'name': self.name,
                'created_at': format_dt(self.created_at),
                'last_refreshed_at': format_dt(self.last_refreshed_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Dataset':
        return cls(id=str(data['id']), user_id=str(data['user_id']), name=data.get('name') or '',
                   created_at=parse_dt(data.get('created_at')),
                   last_refreshed_at=parse_dt(data.get('last_refreshed_at')))


@dataclass
class Business:
    id: str
    dataset_id: str
    name: str = ''
    website: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Business':
        return cls(id=str(data['id']), dataset_id=str(data['dataset_id']), name=data.get('name') or '',
                   website=data.get('website'), address=data.get('address'),
                   city=data.get('city'), phone=data.get('phone'))


@dataclass
class DatasetSnapshot:
    """Frozen copy of a dataset's businesses and contacts."""
    id: str
    dataset_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, dataset_id: str, user_id: str, data: Dict[str, Any],
               created_at: datetime) -> 'DatasetSnapshot':
        return cls(
            id=str(uuid.uuid4()),
            dataset_id=dataset_id,
            user_id=user_id,
            created_at=created_at,
            expires_at=created_at + SNAPSHOT_TTL,
            data=data,
        )

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'dataset_id': self.dataset_id, 'user_id': self.user_id,
                'created_at': format_dt(self.created_at), 'expires_at': format_dt(self.expires_at),
                'data': self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatasetSnapshot':
        return cls(id=str(data['id']), dataset_id=str(data['dataset_id']), user_id=str(data['user_id']),
                   created_at=parse_dt(data['created_at']), expires_at=parse_dt(data['expires_at']),
                   data=data.get('data') or {})


@dataclass
class CrawlJob:
    """A queued or finished crawl of one business website."""
    id: str
    dataset_id: str
    business_id: str
    website_url: str
    status: CrawlJobStatus = CrawlJobStatus.QUEUED
    max_depth: int = 2
    pages_limit: int = DEFAULT_PAGES_LIMIT
    pages_crawled: int = 0
    attempts: int = 0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = CrawlJobStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'dataset_id': self.dataset_id,
            'business_id': self.business_id,
            'website_url': self.website_url,
            'status': self.status.value,
            'max_depth': self.max_depth,
            'pages_limit': self.pages_limit,
            'pages_crawled': self.pages_crawled,
            'attempts': self.attempts,
            'error': self.error,
            'created_at': format_dt(self.created_at),
            'started_at': format_dt(self.started_at),
            'finished_at': format_dt(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlJob':
        return cls(
            id=str(data['id']),
            dataset_id=str(data['dataset_id']),
            business_id=str(data['business_id']),
            website_url=data['website_url'],
            status=data.get('status') or CrawlJobStatus.QUEUED,
            max_depth=int(data.get('max_depth', 2)),
            pages_limit=int(data.get('pages_limit') or DEFAULT_PAGES_LIMIT),
            pages_crawled=int(data.get('pages_crawled') or 0),
            attempts=int(data.get('attempts') or 0),
            error=data.get('error'),
            created_at=parse_dt(data.get('created_at')),
            started_at=parse_dt(data.get('started_at')),
            finished_at=parse_dt(data.get('finished_at')),
        )


@dataclass
class DatasetCrawlSummary:
    """Aggregate outcome of crawling every business in a dataset."""
    dataset_id: str
    total_businesses: int = 0
    crawled: int = 0
    failed: int = 0
    skipped: int = 0
    total_pages: int = 0
    total_emails: int = 0
    total_phones: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['started_at'] = format_dt(self.started_at)
        data['finished_at'] = format_dt(self.finished_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DatasetCrawlSummary':
        values = dict(data)
        values['started_at'] = parse_dt(values.get('started_at'))
        values['finished_at'] = parse_dt(values.get('finished_at'))
        values['errors'] = list(values.get('errors') or [])
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


def build_export_rows(businesses: Iterable[Business], results: Iterable[CrawlResult],
                      limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Join businesses with their crawl results into flat export rows."""
    by_business = {result.business_id: result for result in results}
    rows: List[Dict[str, Any]] = []

    for business in businesses:
        try:
            key = integer_to_uuid(business.id)
        except ValueError:
            key = business.id
        result = by_business.get(key) or by_business.get(business.id)

        emails = [hit.value for hit in result.emails] if result else []
        phones = [hit.value for hit in result.phones] if result else []
        confidence = max((hit.confidence for hit in result.emails), default=None) if result else None
        rows.append({
            'business_id': business.id,
            'name': business.name,
            'website': business.website,
            'address': business.address,
            'city': business.city,
            'email': emails[0] if emails else None,
            'phone': phones[0] if phones else business.phone,
            'emails': list(dict.fromkeys(emails)),
            'phones': list(dict.fromkeys(phones)),
            'social': dict(result.social) if result else {},
            'contact_page': result.contact_pages[0] if result and result.contact_pages else None,
            'crawl_status': result.crawl_status.value if result else 'not_crawled',
            'confidence': confidence,
        })
        if limit is not None and len(rows) >= limit:
            break
    return rows


class Store(ABC):
    """Operations every storage backend provides."""

    name = 'store'

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backend can serve requests."""

    async def close(self) -> None:
        return None

    # Users and usage
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def save_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> Dict[str, int]:
        ...

    @abstractmethod
    async def increment_usage(self, user_id: str, field_name: str, amount: int = 1) -> Dict[str, int]:
        ...

    # Datasets and businesses
    @abstractmethod
    async def save_dataset(self, dataset: Dataset) -> Dataset:
        ...

    @abstractmethod
    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        ...

    @abstractmethod
    async def get_latest_dataset(self, user_id: str) -> Optional[Dataset]:
        ...

    @abstractmethod
    async def list_datasets(self, user_id: Optional[str] = None) -> List[Dataset]:
        ...

    @abstractmethod
    async def save_businesses(self, dataset_id: str, businesses: List[Business]) -> None:
        ...

    @abstractmethod
    async def list_businesses(self, dataset_id: str) -> List[Business]:
        ...

    # Snapshots
    @abstractmethod
    async def create_dataset_snapshot(self, dataset_id: str, user_id: str,
                                      data: Dict[str, Any]) -> DatasetSnapshot:
        ...

    @abstractmethod
    async def get_dataset_snapshot(self, dataset_id: str) -> Optional[DatasetSnapshot]:
        """Newest snapshot of the dataset, expired or not."""

    # Crawl jobs and pages
    @abstractmethod
    async def create_crawl_job(self, dataset_id: str, business_id: str, website_url: str,
                               max_depth: int = 2, pages_limit: int = DEFAULT_PAGES_LIMIT) -> CrawlJob:
        ...

    @abstractmethod
    async def get_crawl_job(self, job_id: str) -> Optional[CrawlJob]:
        ...

    @abstractmethod
    async def update_crawl_job(self, job: CrawlJob) -> CrawlJob:
        ...

    @abstractmethod
    async def list_crawl_jobs(self, dataset_id: str) -> List[CrawlJob]:
        ...

    @abstractmethod
    async def save_page(self, crawl_job_id: str, page: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def save_contacts(self, dataset_id: str, contacts: List[Dict[str, Any]]) -> int:
        ...

    # Crawl results
    @abstractmethod
    async def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        """Insert or replace the result for (business_id, dataset_id), keeping created_at."""

    @abstractmethod
    async def get_crawl_result(self, business_id: str, dataset_id: str) -> Optional[CrawlResult]:
        ...

    @abstractmethod
    async def list_crawl_results(self, dataset_id: str) -> List[CrawlResult]:
        ...

    @abstractmethod
    async def save_crawl_summary(self, summary: DatasetCrawlSummary) -> None:
        ...

    @abstractmethod
    async def get_crawl_summary(self, dataset_id: str) -> Optional[DatasetCrawlSummary]:
        ...

    # Exports
    async def get_export_rows(self, dataset_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        businesses = await self.list_businesses(dataset_id)
        results = await self.list_crawl_results(dataset_id)
        return build_export_rows(businesses, results, limit)

    @abstractmethod
    async def record_export(self, user_id: str, dataset_id: str, rows: int, watermark: str) -> None:
        ...

