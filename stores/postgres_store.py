"""PostgreSQL primary store.

asyncpg pool with lazily applied schema. Crawl results are written with
``INSERT ... ON CONFLICT (business_id, dataset_id) DO UPDATE`` so concurrent
writers for the same pair resolve inside the database.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from config.database import PostgresConfig
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

SCHEMA_PATH = Path(__file__).with_name('schema.sql')
USAGE_FIELDS = ('crawls', 'exports')


def _json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _load(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row(record: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    data = dict(record)
    for key, value in data.items():
        if isinstance(value, uuid.UUID):
            data[key] = str(value)
    return data


class PostgresStore(Store):
    """Store backed by PostgreSQL through an asyncpg pool."""

    name = 'postgres'

    def __init__(self, config: PostgresConfig, clock: Optional[Clock] = None,
                 health_timeout: float = 5.0):
        super().__init__(clock)
        self.config = config
        self.health_timeout = health_timeout
        self.pool: Optional[asyncpg.Pool] = None
        self._schema_ready = False

    async def initialize(self):
        """Initialize connection pool and ensure schema exists."""
        if self.pool is not None:
            return
        try:
            if self.config.dsn:
                self.pool = await asyncpg.create_pool(
                    dsn=self.config.dsn,
                    min_size=self.config.min_connections,
                    max_size=self.config.max_connections,
                    command_timeout=self.config.command_timeout
                )
            else:
                self.pool = await asyncpg.create_pool(
                    host=self.config.host,
                    port=self.config.port,
                    database=self.config.database,
                    user=self.config.user,
                    password=self.config.password,
                    min_size=self.config.min_connections,
                    max_size=self.config.max_connections,
                    command_timeout=self.config.command_timeout
                )
            logger.info("PostgreSQL connection pool initialized")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise StoreError(f"PostgreSQL unavailable: {e}") from e

        if not self._schema_ready:
            await self.execute_schema(SCHEMA_PATH)
            self._schema_ready = True

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def execute_schema(self, schema_path: Path):
        """Execute schema SQL file."""
        with open(schema_path, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
        logger.info(f"Schema executed from {schema_path}")

    async def health_check(self) -> bool:
        try:
            await asyncio.wait_for(self._probe(), timeout=self.health_timeout)
            return True
        except (asyncio.TimeoutError, OSError, StoreError, asyncpg.PostgresError,
                asyncpg.InterfaceError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    async def _probe(self):
        await self.initialize()
        async with self.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def _acquire(self):
        if self.pool is None:
            await self.initialize()
        return self.pool.acquire()

    # Users and usage
    async def get_user(self, user_id: str) -> Optional[User]:
        async with await self._acquire() as conn:
            row = await conn.fetchrow("SELECT id, plan, email, created_at FROM users WHERE id = $1", user_id)
        return User.from_dict(_row(row)) if row else User(id=user_id, plan='demo')

    async def save_user(self, user: User) -> User:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO users (id, plan, email)
                VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET
                    plan = EXCLUDED.plan,
                    email = EXCLUDED.email
                RETURNING id, plan, email, created_at
                """,
                user.id, user.plan, user.email
            )
        return User.from_dict(_row(row))

    async def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> Dict[str, int]:
        month = month or self.now().strftime('%Y-%m')
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT crawls, exports FROM usage_tracking WHERE user_id = $1 AND month = $2",
                user_id, month
            )
        return dict(row) if row else {}

    async def increment_usage(self, user_id: str, field_name: str, amount: int = 1) -> Dict[str, int]:
        if field_name not in USAGE_FIELDS:
            raise ValueError(f"Unknown usage counter: {field_name}")
        month = self.now().strftime('%Y-%m')
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO usage_tracking (user_id, month, {field_name})
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, month) DO UPDATE SET
                    {field_name} = usage_tracking.{field_name} + EXCLUDED.{field_name}
                RETURNING crawls, exports
                """,
                user_id, month, amount
            )
        return dict(row)

    # Datasets and businesses
    async def save_dataset(self, dataset: Dataset) -> Dataset:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO datasets (id, user_id, name, created_at, last_refreshed_at)
                VALUES ($1, $2, $3, COALESCE($4, NOW()), $5)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    last_refreshed_at = EXCLUDED.last_refreshed_at
                RETURNING id, user_id, name, created_at, last_refreshed_at
                """,
                dataset.id, dataset.user_id, dataset.name, dataset.created_at, dataset.last_refreshed_at
            )
        return Dataset.from_dict(_row(row))

    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, user_id, name, created_at, last_refreshed_at FROM datasets WHERE id = $1",
                dataset_id
            )
        return Dataset.from_dict(_row(row)) if row else None

    async def get_latest_dataset(self, user_id: str) -> Optional[Dataset]:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, name, created_at, last_refreshed_at
                FROM datasets WHERE user_id = $1
                ORDER BY created_at DESC LIMIT 1
                """,
                user_id
            )
        return Dataset.from_dict(_row(row)) if row else None

    async def list_datasets(self, user_id: Optional[str] = None) -> List[Dataset]:
        async with await self._acquire() as conn:
            if user_id is None:
                rows = await conn.fetch(
                    "SELECT id, user_id, name, created_at, last_refreshed_at FROM datasets ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT id, user_id, name, created_at, last_refreshed_at
                    FROM datasets WHERE user_id = $1 ORDER BY created_at
                    """,
                    user_id
                )
        return [Dataset.from_dict(_row(r)) for r in rows]

    async def save_businesses(self, dataset_id: str, businesses: List[Business]) -> None:
        async with await self._acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM businesses WHERE dataset_id = $1", dataset_id)
                await conn.executemany(
                    """
                    INSERT INTO businesses (id, dataset_id, name, website, address, city, phone)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    [(b.id, dataset_id, b.name, b.website, b.address, b.city, b.phone) for b in businesses]
                )

    async def list_businesses(self, dataset_id: str) -> List[Business]:
        async with await self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, dataset_id, name, website, address, city, phone
                FROM businesses WHERE dataset_id = $1 ORDER BY position
                """,
                dataset_id
            )
        return [Business.from_dict(_row(r)) for r in rows]

    # Snapshots
    async def create_dataset_snapshot(self, dataset_id: str, user_id: str,
                                      data: Dict[str, Any]) -> DatasetSnapshot:
        snapshot = DatasetSnapshot.create(dataset_id, user_id, data, created_at=self.now())
        async with await self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO dataset_snapshots (id, dataset_id, user_id, data, created_at, expires_at)
                VALUES ($1, $2, $3, $4::jsonb, $5, $6)
                """,
                snapshot.id, dataset_id, user_id, _json(data), snapshot.created_at, snapshot.expires_at
            )
        logger.info(f"Created snapshot {snapshot.id} for dataset {dataset_id}")
        return snapshot

    async def get_dataset_snapshot(self, dataset_id: str) -> Optional[DatasetSnapshot]:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, dataset_id, user_id, data, created_at, expires_at
                FROM dataset_snapshots WHERE dataset_id = $1
                ORDER BY created_at DESC LIMIT 1
                """,
                dataset_id
            )
        if not row:
            return None
        data = _row(row)
        data['data'] = _load(data['data'])
        return DatasetSnapshot.from_dict(data)

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
        async with await self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO crawl_jobs (id, dataset_id, business_id, website_url, status,
                                        max_depth, pages_limit, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                job.id, dataset_id, job.business_id, website_url, job.status.value,
                max_depth, pages_limit, job.created_at
            )
        return job

    async def get_crawl_job(self, job_id: str) -> Optional[CrawlJob]:
        try:
            uuid.UUID(str(job_id))
        except ValueError:
            return None
        async with await self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM crawl_jobs WHERE id = $1", job_id)
        return CrawlJob.from_dict(_row(row)) if row else None

    async def update_crawl_job(self, job: CrawlJob) -> CrawlJob:
        async with await self._acquire() as conn:
            await conn.execute(
                """
                UPDATE crawl_jobs SET
                    status = $2, pages_crawled = $3, attempts = $4, error = $5,
                    started_at = $6, finished_at = $7
                WHERE id = $1
                """,
                job.id, job.status.value, job.pages_crawled, job.attempts, job.error,
                job.started_at, job.finished_at
            )
        return job

    async def list_crawl_jobs(self, dataset_id: str) -> List[CrawlJob]:
        async with await self._acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM crawl_jobs WHERE dataset_id = $1 ORDER BY created_at", dataset_id
            )
        return [CrawlJob.from_dict(_row(r)) for r in rows]

    async def save_page(self, crawl_job_id: str, page: Dict[str, Any]) -> str:
        page_id = str(uuid.uuid4())
        async with await self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO crawl_pages (id, crawl_job_id, url, final_url, depth, status_code, page_type,
                                         title, content_type, error, emails_found, phones_found,
                                         has_contact_form)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                """,
                page_id, crawl_job_id, page.get('url'), page.get('final_url'), page.get('depth', 0),
                page.get('status_code'), page.get('page_type'), page.get('title'),
                page.get('content_type'), page.get('error'), page.get('emails_found', 0),
                page.get('phones_found', 0), bool(page.get('has_contact_form'))
            )
        return page_id

    async def save_contacts(self, dataset_id: str, contacts: List[Dict[str, Any]]) -> int:
        if not contacts:
            return 0
        async with await self._acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO contacts (dataset_id, business_id, kind, value, source_url,
                                      page_type, confidence, context)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (dataset_id, business_id, kind, value, source_url) DO UPDATE SET
                    page_type = EXCLUDED.page_type,
                    confidence = EXCLUDED.confidence,
                    context = EXCLUDED.context
                """,
                [
                    (dataset_id, c['business_id'], c['kind'], c['value'], c.get('source_url') or '',
                     c.get('page_type'), c.get('confidence'), c.get('context'))
                    for c in contacts
                ]
            )
        return len(contacts)

    # Crawl results
    def _result_from_row(self, row: asyncpg.Record) -> CrawlResult:
        data = _row(row)
        for key in ('emails', 'phones', 'social', 'errors'):
            data[key] = _load(data[key])
        return CrawlResult.from_dict(data)

    async def upsert_crawl_result(self, result: CrawlResult) -> CrawlResult:
        data = result.to_dict()
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO crawl_results (business_id, dataset_id, website_url, started_at, finished_at,
                                           pages_visited, crawl_status, emails, phones, contact_pages,
                                           social, errors)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11::jsonb, $12::jsonb)
                ON CONFLICT (business_id, dataset_id) DO UPDATE SET
                    website_url = EXCLUDED.website_url,
                    started_at = EXCLUDED.started_at,
                    finished_at = EXCLUDED.finished_at,
                    pages_visited = EXCLUDED.pages_visited,
                    crawl_status = EXCLUDED.crawl_status,
                    emails = EXCLUDED.emails,
                    phones = EXCLUDED.phones,
                    contact_pages = EXCLUDED.contact_pages,
                    social = EXCLUDED.social,
                    errors = EXCLUDED.errors,
                    updated_at = NOW()
                RETURNING *
                """,
                result.business_id, result.dataset_id, result.website_url, result.started_at,
                result.finished_at, result.pages_visited, result.crawl_status.value,
                _json(data['emails']), _json(data['phones']), list(result.contact_pages),
                _json(data['social']), _json(data['errors'])
            )
        stored = self._result_from_row(row)
        result.created_at = stored.created_at
        result.updated_at = stored.updated_at
        return result

    async def get_crawl_result(self, business_id: str, dataset_id: str) -> Optional[CrawlResult]:
        async with await self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM crawl_results WHERE business_id = $1 AND dataset_id = $2",
                business_id, dataset_id
            )
        return self._result_from_row(row) if row else None

    async def list_crawl_results(self, dataset_id: str) -> List[CrawlResult]:
        async with await self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM crawl_results WHERE dataset_id = $1", dataset_id)
        return [self._result_from_row(r) for r in rows]

    async def save_crawl_summary(self, summary: DatasetCrawlSummary) -> None:
        async with await self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO crawl_summaries (dataset_id, summary)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (dataset_id) DO UPDATE SET
                    summary = EXCLUDED.summary,
                    updated_at = NOW()
                """,
                summary.dataset_id, _json(summary.to_dict())
            )

    async def get_crawl_summary(self, dataset_id: str) -> Optional[DatasetCrawlSummary]:
        async with await self._acquire() as conn:
            value = await conn.fetchval("SELECT summary FROM crawl_summaries WHERE dataset_id = $1", dataset_id)
        return DatasetCrawlSummary.from_dict(_load(value)) if value else None

    # Exports
    async def record_export(self, user_id: str, dataset_id: str, rows: int, watermark: str) -> None:
        async with await self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO exports (id, user_id, dataset_id, row_count, watermark)
                VALUES ($1, $2, $3, $4, $5)
                """,
                str(uuid.uuid4()), user_id, dataset_id, rows, watermark
            )
