"""Tests for crawl triggering and the sequential job worker."""

import pytest

from config.crawl_config import CrawlConfig
from conftest import ACME_SITE, FakeSiteCrawler
from pipelines.crawler import SafetyCaps
from services.crawl_runner import CrawlRequestError, CrawlRunner
from services.dataset_resolver import DatasetResolver
from services.discovery_queue import DiscoveryQueue
from stores.base import Business, CrawlJobStatus, Dataset, StoreUnavailableError, User
from stores.local_store import LocalStore, read_json

SAFETY = SafetyCaps(max_pages_per_crawl=50, max_concurrent_crawls=1, crawl_timeout_seconds=10.0)


class ExplodingCrawler(FakeSiteCrawler):
    """Raises for business b3 instead of crawling it."""

    async def crawl(self, business_id, *args, **kwargs):
        if business_id == "b3":
            raise RuntimeError("boom")
        return await super().crawl(business_id, *args, **kwargs)


class UnavailableStore(LocalStore):
    async def upsert_crawl_result(self, result):
        raise StoreUnavailableError("Both primary and fallback stores are unavailable")


async def seed(store, plan="demo"):
    await store.save_user(User(id="u1", plan=plan))
    await store.save_dataset(Dataset(id="d1", user_id="u1", name="Athens shops"))
    await store.save_businesses("d1", [
        Business(id="b1", dataset_id="d1", name="Acme", website="https://acme.example/"),
        Business(id="b2", dataset_id="d1", name="No Site"),
        Business(id="b3", dataset_id="d1", name="Broken", website="https://broken.example/"),
    ])


@pytest.fixture
def config(tmp_path):
    return CrawlConfig(str(tmp_path / "missing-crawl-config.yaml"))


@pytest.fixture
def crawler():
    return ExplodingCrawler(ACME_SITE, safety=SAFETY)


class TestTriggerCrawl:
    """Request validation and plan gating"""

    @pytest.mark.asyncio
    async def test_rejections(self, local_store, crawler, config):
        await seed(local_store)
        await local_store.save_dataset(Dataset(id="d2", user_id="u2"))
        await local_store.save_dataset(Dataset(id="empty", user_id="u1"))
        runner = CrawlRunner(local_store, crawler, config)

        cases = [
            (dict(dataset_id=None), 400),
            (dict(dataset_id="d1", max_depth=-1), 400),
            (dict(dataset_id="d1", max_depth="2"), 400),
            (dict(dataset_id="d1", pages_limit=0), 400),
            (dict(dataset_id="nope"), 404),
            (dict(dataset_id="d2"), 403),
            (dict(dataset_id="empty"), 400),
        ]
        for kwargs, status in cases:
            with pytest.raises(CrawlRequestError) as exc_info:
                await runner.trigger_crawl("u1", **kwargs)
            assert exc_info.value.status_code == status, kwargs

        assert await local_store.list_crawl_jobs("d1") == []

    @pytest.mark.asyncio
    async def test_monthly_limit(self, local_store, crawler, config):
        await seed(local_store)
        await local_store.increment_usage("u1", "crawls", 50)
        runner = CrawlRunner(local_store, crawler, config)

        with pytest.raises(CrawlRequestError) as exc_info:
            await runner.trigger_crawl("u1", "d1")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_demo_plan_is_gated(self, local_store, crawler, config):
        await seed(local_store)
        runner = CrawlRunner(local_store, crawler, config)

        trigger = await runner.trigger_crawl("u1", "d1", max_depth=3)
        response = trigger.to_response()

        assert response["data"]["jobs_created"] == 2
        assert response["data"]["max_depth"] == 1
        assert response["data"]["pages_limit"] == 5
        assert response["meta"]["plan_id"] == "demo"
        assert response["meta"]["gated"] is True
        assert response["meta"]["upgrade_hint"].startswith("Upgrade to Starter")
        assert response["meta"]["total_available"] == 2

        jobs = await local_store.list_crawl_jobs("d1")
        assert sorted(j.business_id for j in jobs) == ["b1", "b3"]
        assert {(j.max_depth, j.pages_limit, j.status) for j in jobs} == {(1, 5, CrawlJobStatus.QUEUED)}

    @pytest.mark.asyncio
    async def test_pro_plan_within_limits(self, local_store, crawler, config):
        await seed(local_store, plan="pro")
        runner = CrawlRunner(local_store, crawler, config)

        trigger = await runner.trigger_crawl("u1", "d1", max_depth=2, pages_limit=30)
        assert not trigger.gate.gated
        assert trigger.to_response()["meta"]["gate_reason"] is None

    @pytest.mark.asyncio
    async def test_recent_jobs_are_skipped(self, local_store, crawler, config):
        await seed(local_store)
        runner = CrawlRunner(local_store, crawler, config)

        await runner.trigger_crawl("u1", "d1")
        second = await runner.trigger_crawl("u1", "d1")

        assert second.jobs == []
        assert second.skipped == 2
        assert "Skipped 2" in second.to_response()["data"]["message"]
        assert len(await local_store.list_crawl_jobs("d1")) == 2


class TestRunJobs:
    """Sequential execution and persistence"""

    @pytest.mark.asyncio
    async def test_run_persists_everything(self, local_store, crawler, config):
        await seed(local_store)
        runner = CrawlRunner(local_store, crawler, config)
        trigger = await runner.trigger_crawl("u1", "d1")

        summary = await runner.run_jobs("d1", "u1", trigger.job_ids)

        assert summary.total_businesses == 3
        assert summary.skipped == 1
        assert summary.crawled == 1
        assert summary.failed == 1
        assert summary.errors == [{"business_id": "b3", "error": "boom"}]
        assert summary.total_pages == 3
        assert summary.total_emails == 1
        assert summary.total_phones == 1
        assert summary.finished_at >= summary.started_at
        assert await local_store.get_crawl_summary("d1") == summary

        jobs = {j.business_id: j for j in await local_store.list_crawl_jobs("d1")}
        assert jobs["b1"].status == CrawlJobStatus.SUCCESS
        assert jobs["b1"].pages_crawled == 3
        assert jobs["b1"].attempts == 1
        assert jobs["b3"].status == CrawlJobStatus.FAILED
        assert jobs["b3"].error == "boom"

        result = await local_store.get_crawl_result("b1", "d1")
        assert [hit.value for hit in result.emails] == ["info@acme.gr"]

        pages = read_json(local_store.root / "pages" / f"{jobs['b1'].id}.json")
        assert len(pages) == 3
        contacts = read_json(local_store.root / "datasets" / "d1" / "contacts.json")
        assert {(c["kind"], c["value"]) for c in contacts} == {("email", "info@acme.gr"),
                                                               ("phone", "+302101234567")}

        snapshot = await local_store.get_dataset_snapshot("d1")
        assert snapshot.data["contacts"][0]["email"] == "info@acme.gr"
        assert snapshot.data["summary"]["crawled"] == 1
        assert (await local_store.get_dataset("d1")).last_refreshed_at is not None
        assert await local_store.get_monthly_usage("u1") == {"crawls": 1}

    @pytest.mark.asyncio
    async def test_only_requested_jobs_run(self, local_store, crawler, config):
        await seed(local_store)
        runner = CrawlRunner(local_store, crawler, config)
        trigger = await runner.trigger_crawl("u1", "d1")
        b1_job = next(j for j in trigger.jobs if j.business_id == "b1")

        summary = await runner.run_jobs("d1", "u1", [b1_job.id])

        assert summary.crawled == 1
        assert summary.failed == 0
        statuses = {j.business_id: j.status for j in await local_store.list_crawl_jobs("d1")}
        assert statuses == {"b1": CrawlJobStatus.SUCCESS, "b3": CrawlJobStatus.QUEUED}

    @pytest.mark.asyncio
    async def test_store_outage_aborts_run(self, tmp_path, crawler, config):
        store = UnavailableStore(str(tmp_path / "store"))
        await seed(store)
        runner = CrawlRunner(store, crawler, config)
        await runner.trigger_crawl("u1", "d1")

        with pytest.raises(StoreUnavailableError):
            await runner.run_jobs("d1", "u1")
        assert await store.get_crawl_summary("d1") is None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_recrawl_dataset(self, local_store, crawler, config):
        await seed(local_store)
        runner = CrawlRunner(local_store, crawler, config)

        summary = await runner.recrawl_dataset("d1", "u1")
        assert summary.crawled == 1
        assert await runner.recrawl_dataset("missing", "u1") is None

    @pytest.mark.asyncio
    async def test_refresh_queues_datasets_without_fresh_snapshot(self, local_store, crawler, config):
        await seed(local_store)
        await local_store.save_dataset(Dataset(id="d2", user_id="u1"))
        await local_store.create_dataset_snapshot("d2", "u1", {"businesses": []})

        queue = DiscoveryQueue()
        resolver = DatasetResolver(local_store, queue)
        runner = CrawlRunner(local_store, crawler, config, dataset_resolver=resolver)
        queue.set_handler(runner.handle_discovery)

        assert await runner.refresh_stale_datasets() == 1
        await queue.wait_idle()

        assert queue.processed == 1
        assert (await local_store.get_crawl_summary("d1")).crawled == 1
        assert await local_store.get_dataset_snapshot("d1") is not None

    @pytest.mark.asyncio
    async def test_refresh_requires_resolver(self, local_store, crawler, config):
        runner = CrawlRunner(local_store, crawler, config)
        with pytest.raises(RuntimeError):
            await runner.refresh_stale_datasets()
