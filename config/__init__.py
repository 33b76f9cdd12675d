"""Configuration module for the lead crawler.

Provides settings for store backends, crawl tunables and the API process.
"""

from .database import StoreConfig, get_store_config
from .crawl_config import CrawlConfig, DEFAULT_CONFIG, get_crawl_config, reload_crawl_config
from .settings import AppSettings

__all__ = [
    'StoreConfig',
    'get_store_config',
    'CrawlConfig',
    'DEFAULT_CONFIG',
    'get_crawl_config',
    'reload_crawl_config',
    'AppSettings'
]
