"""Writing crawl results under a uniform business key."""

import dataclasses
import logging

from pipelines.crawler import CrawlResult
from stores.base import Store
from stores.identifiers import integer_to_uuid, uuid_to_integer

logger = logging.getLogger(__name__)

__all__ = ['normalize_business_id', 'upsert_crawl_result', 'integer_to_uuid', 'uuid_to_integer']


def normalize_business_id(business_id) -> str:
    """Map legacy integer ids to UUID-shaped strings; pass everything else through."""
    try:
        return integer_to_uuid(business_id)
    except ValueError:
        return str(business_id)


async def upsert_crawl_result(store: Store, result: CrawlResult) -> CrawlResult:
    """Store ``result`` as the single authoritative row for its business/dataset pair.

    The first-seen ``created_at`` is kept by the backend; everything else is
    replaced by the new values.
    """
    business_id = normalize_business_id(result.business_id)
    if business_id != result.business_id:
        result = dataclasses.replace(result, business_id=business_id)

    stored = await store.upsert_crawl_result(result)
    logger.debug(f"Upserted crawl result for business {business_id} in dataset {result.dataset_id} "
                 f"({stored.crawl_status.value})")
    return stored
