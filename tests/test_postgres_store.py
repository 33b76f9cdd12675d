"""Tests for the PostgreSQL store against a mocked asyncpg pool."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config.database import PostgresConfig
from pipelines.crawler import CrawlResult
from pipelines.extractor import ContactHit
from stores.postgres_store import PostgresStore

CREATED = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)


def make_store(health_timeout=5.0):
    store = PostgresStore(PostgresConfig(dsn="postgresql://leadscope@localhost/leadscope"),
                          health_timeout=health_timeout)
    conn = AsyncMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    store.pool = pool
    return store, conn


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        store, conn = make_store()
        conn.fetchval.return_value = 1

        assert await store.health_check()
        conn.fetchval.assert_awaited_once_with("SELECT 1")

    @pytest.mark.asyncio
    async def test_connection_error_is_unhealthy(self):
        store, conn = make_store()
        conn.fetchval.side_effect = OSError("connection refused")

        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_slow_probe_times_out(self):
        store, conn = make_store(health_timeout=0.05)

        async def hang(*args):
            await asyncio.sleep(5)

        conn.fetchval.side_effect = hang
        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_pool_creation_failure_is_unhealthy(self):
        store = PostgresStore(PostgresConfig(), health_timeout=1.0)
        with patch("stores.postgres_store.asyncpg.create_pool", AsyncMock(side_effect=OSError("no route"))):
            assert not await store.health_check()
        assert store.pool is None


class TestQueries:
    """SQL issued for the main store operations"""

    @pytest.mark.asyncio
    async def test_unknown_user_is_demo(self):
        store, conn = make_store()
        conn.fetchrow.return_value = None

        user = await store.get_user("u1")
        assert user.id == "u1"
        assert user.plan == "demo"

    @pytest.mark.asyncio
    async def test_upsert_uses_on_conflict_and_returns_created_at(self):
        store, conn = make_store()
        result = CrawlResult(business_id="b1", dataset_id="d1", website_url="https://acme.example/",
                             pages_visited=2, crawl_status="completed",
                             emails=[ContactHit(value="info@acme.gr", source_url="https://acme.example/contact")])
        conn.fetchrow.return_value = {
            **result.to_dict(),
            "emails": json.dumps([hit.to_dict() for hit in result.emails]),
            "phones": "[]",
            "social": "{}",
            "errors": "[]",
            "created_at": CREATED,
            "updated_at": CREATED,
        }

        stored = await store.upsert_crawl_result(result)

        sql, *params = conn.fetchrow.await_args.args
        assert "ON CONFLICT (business_id, dataset_id) DO UPDATE" in sql
        assert "created_at" not in sql.split("DO UPDATE SET", 1)[1]
        assert params[:2] == ["b1", "d1"]
        assert json.loads(params[7])[0]["value"] == "info@acme.gr"
        assert stored.created_at == CREATED

    @pytest.mark.asyncio
    async def test_increment_usage_rejects_unknown_counter(self):
        store, conn = make_store()
        with pytest.raises(ValueError):
            await store.increment_usage("u1", "crawls; DROP TABLE users", 1)
        conn.fetchrow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_increment_usage(self):
        store, conn = make_store()
        conn.fetchrow.return_value = {"crawls": 2, "exports": 0}

        assert await store.increment_usage("u1", "crawls") == {"crawls": 2, "exports": 0}
        assert "usage_tracking.crawls + EXCLUDED.crawls" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_non_uuid_job_id_is_not_queried(self):
        store, conn = make_store()
        assert await store.get_crawl_job("not-a-uuid") is None
        conn.fetchrow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_snapshot_row_is_decoded(self):
        store, conn = make_store()
        conn.fetchrow.return_value = {
            "id": "s1", "dataset_id": "d1", "user_id": "u1",
            "data": '{"businesses": []}', "created_at": CREATED, "expires_at": CREATED,
        }

        snapshot = await store.get_dataset_snapshot("d1")
        assert snapshot.data == {"businesses": []}
        assert "ORDER BY created_at DESC" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_save_contacts_skips_empty(self):
        store, conn = make_store()
        assert await store.save_contacts("d1", []) == 0
        conn.executemany.assert_not_awaited()
