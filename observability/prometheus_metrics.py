"""Prometheus metrics for the lead crawler."""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry
from fastapi import FastAPI, Response

logger = logging.getLogger(__name__)

# Dedicated registry so tests and multiple apps don't collide on the default one
crawler_registry = CollectorRegistry()

# Crawl metrics
pages_fetched = Counter(
    'leadscope_pages_fetched_total',
    'Pages fetched by the crawl engine',
    ['outcome'],
    registry=crawler_registry
)

crawl_results = Counter(
    'leadscope_crawl_results_total',
    'Finished crawls by status',
    ['status'],
    registry=crawler_registry
)

crawl_duration = Histogram(
    'leadscope_crawl_duration_seconds',
    'Wall-clock duration of one website crawl',
    buckets=[1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0],
    registry=crawler_registry
)

contacts_found = Counter(
    'leadscope_contacts_found_total',
    'Contact values extracted',
    ['kind'],
    registry=crawler_registry
)

# Store metrics
store_resolutions = Counter(
    'leadscope_store_resolutions_total',
    'Backend chosen by the store resolver after a health probe',
    ['backend'],
    registry=crawler_registry
)

store_failures = Counter(
    'leadscope_store_failures_total',
    'Backend errors that invalidated the resolver cache',
    ['backend'],
    registry=crawler_registry
)

# Discovery queue metrics
discovery_queue_depth = Gauge(
    'leadscope_discovery_queue_depth',
    'Pending re-discovery jobs',
    registry=crawler_registry
)

discovery_jobs = Counter(
    'leadscope_discovery_jobs_total',
    'Re-discovery jobs by outcome',
    ['outcome'],
    registry=crawler_registry
)


def record_page_fetch(ok: bool, error: Optional[str] = None) -> None:
    """Record a single page fetch."""
    if ok:
        pages_fetched.labels(outcome='success').inc()
    elif error and 'timeout' in error.lower():
        pages_fetched.labels(outcome='timeout').inc()
    else:
        pages_fetched.labels(outcome='error').inc()


def record_crawl_result(status: str, duration: float, emails: int, phones: int) -> None:
    """Record a finished website crawl."""
    crawl_results.labels(status=status).inc()
    crawl_duration.observe(duration)
    contacts_found.labels(kind='email').inc(emails)
    contacts_found.labels(kind='phone').inc(phones)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Expose the crawler registry on ``/metrics``."""

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(crawler_registry), media_type=CONTENT_TYPE_LATEST)

    logger.info("Prometheus metrics configured")
