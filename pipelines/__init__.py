"""Pipelines package for the lead crawler.

Provides URL utilities, contact extraction, the website crawler and plan gating.
"""

from .crawler import (
    ContactCrawler,
    CrawlResult,
    CrawlStatus,
    FetchResult,
    PageRecord,
    SafetyCaps,
    VisitedSet,
    crawl_website,
    crawl_website_sync
)
from .extractor import ContactHit, PageExtraction, extract_contacts, is_contact_page
from .plan_gate import (
    PLAN_LIMITS,
    CrawlGate,
    ExportGate,
    PlanLimits,
    apply_crawl_gate,
    apply_export_gate,
    get_plan_limits
)
from .url_utils import canonicalize, generate_seed_urls, is_same_domain, should_skip_path

__all__ = [
    # Crawler
    'ContactCrawler',
    'CrawlResult',
    'CrawlStatus',
    'FetchResult',
    'PageRecord',
    'SafetyCaps',
    'VisitedSet',
    'crawl_website',
    'crawl_website_sync',

    # Extraction
    'ContactHit',
    'PageExtraction',
    'extract_contacts',
    'is_contact_page',

    # Plan gate
    'PLAN_LIMITS',
    'CrawlGate',
    'ExportGate',
    'PlanLimits',
    'apply_crawl_gate',
    'apply_export_gate',
    'get_plan_limits',

    # URL utilities
    'canonicalize',
    'generate_seed_urls',
    'is_same_domain',
    'should_skip_path'
]
