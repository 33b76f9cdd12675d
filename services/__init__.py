"""Services that sit between the HTTP layer and the stores."""

from .crawl_results import normalize_business_id, upsert_crawl_result
from .crawl_runner import CrawlRequestError, CrawlRunner, CrawlTrigger
from .dataset_resolver import DatasetResolution, DatasetResolver
from .discovery_queue import DiscoveryJob, DiscoveryQueue

__all__ = [
    'normalize_business_id',
    'upsert_crawl_result',
    'CrawlRequestError',
    'CrawlRunner',
    'CrawlTrigger',
    'DatasetResolution',
    'DatasetResolver',
    'DiscoveryJob',
    'DiscoveryQueue'
]
