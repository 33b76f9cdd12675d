"""HTTP API for triggering crawls and reading their results."""

import datetime
import logging
import os
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.crawl_config import get_crawl_config, reload_crawl_config
from config.settings import AppSettings
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from pipelines.crawler import ContactCrawler
from pipelines.plan_gate import apply_export_gate
from services.crawl_runner import CrawlRequestError, CrawlRunner
from services.dataset_resolver import DatasetResolver
from services.discovery_queue import DiscoveryQueue
from stores.base import Dataset, Store, StoreUnavailableError
from stores.resolver import ResilientStore, StoreResolver
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


class CrawlRequest(BaseModel):
    dataset_id: Optional[str] = Field(default=None, description="Dataset whose businesses should be crawled")
    max_depth: Optional[int] = Field(default=2, description="Requested crawl depth, reduced to the plan limit")
    pages_limit: Optional[int] = Field(default=None, description="Requested pages per website")


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def create_app(settings: Optional[AppSettings] = None,
               crawler: Optional[ContactCrawler] = None) -> FastAPI:
    """Build the API application.

    Args:
        settings: Application settings (defaults to ``AppSettings.from_env()``)
        crawler: Crawler to use instead of a freshly configured one

    Returns:
        FastAPI app; long-lived services are created on startup and kept on
        ``app.state``
    """
    settings = settings or AppSettings.from_env()
    app = FastAPI(title="LeadScope Crawl API", version="0.1.0")
    app.state.settings = settings
    setup_prometheus_metrics(app)

    @app.on_event("startup")
    async def startup_event():
        setup_logging(level=settings.log_level, service_name=settings.service_name,
                      log_file=settings.log_file, use_json=settings.log_json)

        config = reload_crawl_config(settings.crawl_config_path) if settings.crawl_config_path else get_crawl_config()
        resolver = StoreResolver.from_config(settings.store)
        store = ResilientStore(resolver)
        queue = DiscoveryQueue(max_size=settings.discovery_queue_max or config.get_discovery_queue_size())
        dataset_resolver = DatasetResolver(store, queue)
        runner = CrawlRunner(store, crawler or ContactCrawler(config), config, dataset_resolver)
        queue.set_handler(runner.handle_discovery)

        scheduler = RefreshScheduler(runner, config)
        if settings.scheduler_enabled:
            scheduler.start()

        app.state.store_resolver = resolver
        app.state.store = store
        app.state.discovery_queue = queue
        app.state.dataset_resolver = dataset_resolver
        app.state.runner = runner
        app.state.scheduler = scheduler
        logger.info(f"{settings.service_name} started (postgres_enabled={settings.store.postgres_enabled})")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.scheduler.shutdown()
        await app.state.discovery_queue.close()
        await app.state.runner.crawler.close()
        await app.state.store.close()
        logger.info("Shutdown complete")

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(CrawlRequestError)
    async def crawl_request_handler(request: Request, exc: CrawlRequestError):
        return JSONResponse(status_code=exc.status_code, content={
            "data": None,
            "meta": {
                "gated": False,
                "total_available": 0,
                "total_returned": 0,
                "gate_reason": str(exc),
            },
        })

    def get_store(request: Request) -> Store:
        return request.app.state.store

    def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
        return x_user_id or settings.default_user_id

    async def owned_dataset(dataset_id: str, store: Store, user_id: str) -> Dataset:
        dataset = await store.get_dataset(dataset_id)
        if dataset is None:
            raise HTTPException(status_code=404, detail="Dataset not found")
        if dataset.user_id != user_id:
            raise HTTPException(status_code=403, detail="Access denied: You do not own this dataset")
        return dataset

    async def run_crawl_jobs(runner: CrawlRunner, dataset_id: str, user_id: str, job_ids):
        try:
            await runner.run_jobs(dataset_id, user_id, job_ids)
        except StoreUnavailableError as e:
            logger.error(f"Crawl of dataset {dataset_id} aborted: {e}")

    @app.get("/health")
    async def health(store: Store = Depends(get_store)):
        ok = await store.health_check()
        body = {"ok": ok, "backend": store.name, "time": _now()}
        return body if ok else JSONResponse(status_code=503, content=body)

    @app.post("/crawl")
    async def trigger_crawl(req: CrawlRequest, request: Request, background_tasks: BackgroundTasks,
                            user_id: str = Depends(get_user_id)):
        """Create crawl jobs for a dataset and run them in the background."""
        runner: CrawlRunner = request.app.state.runner
        trigger = await runner.trigger_crawl(user_id, req.dataset_id, req.max_depth, req.pages_limit)
        if trigger.jobs:
            background_tasks.add_task(run_crawl_jobs, runner, trigger.dataset_id, user_id, trigger.job_ids)
        return trigger.to_response()

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, store: Store = Depends(get_store)):
        job = await store.get_crawl_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_dict()

    @app.get("/datasets/resolve")
    async def resolve_dataset(request: Request, dataset_id: Optional[str] = None,
                              user_id: str = Depends(get_user_id)):
        """Serve a dataset from its snapshot, queueing re-discovery when stale."""
        if dataset_id:
            await owned_dataset(dataset_id, request.app.state.store, user_id)
        resolution = await request.app.state.dataset_resolver.resolve(user_id, dataset_id)
        return resolution.to_dict()

    @app.get("/datasets/{dataset_id}/results")
    async def dataset_results(dataset_id: str, store: Store = Depends(get_store),
                              user_id: str = Depends(get_user_id)):
        await owned_dataset(dataset_id, store, user_id)
        results = await store.list_crawl_results(dataset_id)
        summary = await store.get_crawl_summary(dataset_id)
        return {
            "data": [result.to_dict() for result in results],
            "meta": {
                "summary": summary.to_dict() if summary else None,
                "total_returned": len(results),
            },
        }

    @app.get("/datasets/{dataset_id}/export")
    async def export_dataset(dataset_id: str, rows: Optional[int] = Query(default=None, ge=1),
                             store: Store = Depends(get_store), user_id: str = Depends(get_user_id)):
        """Export rows joined with crawl results, capped and watermarked per plan."""
        await owned_dataset(dataset_id, store, user_id)
        user = await store.get_user(user_id)
        plan = user.plan if user else 'demo'

        gate = apply_export_gate(plan, await store.get_export_rows(dataset_id))
        exported = gate.rows[:rows] if rows is not None else gate.rows
        await store.record_export(user_id, dataset_id, len(exported), gate.watermark)
        await store.increment_usage(user_id, 'exports')
        return {
            "data": exported,
            "meta": {
                "plan_id": plan,
                "gated": gate.gated,
                "watermark": gate.watermark,
                "total_available": gate.original_rows,
                "total_returned": len(exported),
            },
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "server.api:create_app",
        factory=True,
        host=os.getenv('API_HOST', '0.0.0.0'),
        port=int(os.getenv('API_PORT', '8080')),
    )


if __name__ == "__main__":
    main()
