"""Storage backends for crawl data.

A PostgreSQL primary and a local JSON fallback implement the same ``Store``
contract; ``StoreResolver`` picks one based on cached health checks.
"""

from .base import (
    Business,
    CrawlJob,
    CrawlJobStatus,
    Dataset,
    DatasetCrawlSummary,
    DatasetSnapshot,
    SNAPSHOT_TTL,
    Store,
    StoreError,
    StoreUnavailableError,
    User,
    build_export_rows,
)
from .identifiers import integer_to_uuid, uuid_to_integer
from .local_store import LocalStore
from .postgres_store import PostgresStore
from .resolver import ResilientStore, StoreResolver

__all__ = [
    'Business',
    'CrawlJob',
    'CrawlJobStatus',
    'Dataset',
    'DatasetCrawlSummary',
    'DatasetSnapshot',
    'SNAPSHOT_TTL',
    'Store',
    'StoreError',
    'StoreUnavailableError',
    'User',
    'build_export_rows',
    'integer_to_uuid',
    'uuid_to_integer',
    'LocalStore',
    'PostgresStore',
    'ResilientStore',
    'StoreResolver'
]
