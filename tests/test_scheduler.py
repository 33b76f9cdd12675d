"""Tests for the monthly refresh scheduler."""

import pytest

from config.crawl_config import CrawlConfig
from server.scheduler import REFRESH_JOB_ID, RefreshScheduler


class StubRunner:
    def __init__(self):
        self.calls = 0

    async def refresh_stale_datasets(self):
        self.calls += 1
        return 0


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "crawl_config.yaml"
    path.write_text("schedule:\n  refresh_day: 15\n  refresh_hour: 4\n", encoding="utf-8")
    return CrawlConfig(str(path))


class TestRefreshScheduler:
    @pytest.mark.asyncio
    async def test_registers_monthly_job(self, config):
        scheduler = RefreshScheduler(StubRunner(), config)

        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler.scheduler.get_job(REFRESH_JOB_ID)
            assert job is not None
            fields = {f.name: str(f) for f in job.trigger.fields}
            assert fields["day"] == "15"
            assert fields["hour"] == "4"
            assert fields["minute"] == "0"

            scheduler.start()
            assert len(scheduler.scheduler.get_jobs()) == 1
        finally:
            scheduler.shutdown()
        assert not scheduler.running

    def test_shutdown_before_start(self, config):
        scheduler = RefreshScheduler(StubRunner(), config)
        scheduler.shutdown()
        assert not scheduler.running
