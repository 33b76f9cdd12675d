"""Observability package for the lead crawler."""

from .logging import (
    JSONFormatter,
    ColoredFormatter,
    StructuredLogger,
    setup_logging,
    get_structured_logger
)
from .prometheus_metrics import (
    setup_prometheus_metrics,
    record_page_fetch,
    record_crawl_result,
    crawler_registry
)

__all__ = [
    'JSONFormatter',
    'ColoredFormatter',
    'StructuredLogger',
    'setup_logging',
    'get_structured_logger',
    'setup_prometheus_metrics',
    'record_page_fetch',
    'record_crawl_result',
    'crawler_registry'
]
