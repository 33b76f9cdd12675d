"""Shared fixtures: an in-memory website graph served to the crawler."""

import asyncio
from typing import Dict, Optional

import pytest

from pipelines.crawler import ContactCrawler, FetchResult, SafetyCaps
from pipelines.url_utils import canonicalize
from stores.local_store import LocalStore


class FakeSiteCrawler(ContactCrawler):
    """ContactCrawler that serves pages from a dict instead of the network.

    ``pages`` maps canonical URLs to HTML. Unknown URLs answer 404.
    ``redirects`` maps canonical URLs to the URL they redirect to.
    ``slow`` lists canonical URLs that hang for ``slow_seconds``.
    """

    def __init__(self, pages: Dict[str, str], redirects: Optional[Dict[str, str]] = None,
                 slow=(), slow_seconds: float = 5.0, **kwargs):
        kwargs.setdefault('delay_between_requests', 0)
        super().__init__(**kwargs)
        self.pages = {canonicalize(url): html for url, html in pages.items()}
        self.redirects = {canonicalize(src): dst for src, dst in (redirects or {}).items()}
        self.slow = {canonicalize(url) for url in slow}
        self.slow_seconds = slow_seconds
        self.fetched = []
        self.active = 0
        self.max_active = 0

    async def _fetch_url(self, url: str, scope_url: Optional[str] = None) -> FetchResult:
        self.fetched.append(url)
        key = canonicalize(url)
        if key in self.slow:
            await asyncio.sleep(self.slow_seconds)

        final_url = self.redirects.get(key, url)
        if final_url != url:
            violation = self._scope_violation(final_url, scope_url or url)
            if violation is not None:
                return FetchResult(url=url, status_code=302, error=f"Redirect refused ({violation})",
                                   final_url=final_url)
        html = self.pages.get(canonicalize(final_url))
        if html is None:
            return FetchResult(url=url, status_code=404, error="HTTP 404", final_url=final_url)
        return FetchResult(url=url, status_code=200, content=html,
                           content_type='text/html; charset=utf-8', final_url=final_url)

    async def _traverse(self, state):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await super()._traverse(state)
        finally:
            self.active -= 1


ACME_SITE = {
    "https://acme.example/": """
        <html><head><title>Acme</title></head><body>
        <a href="/contact">Contact</a>
        <a href="/about">About us</a>
        <a href="/cart">Cart</a>
        <a href="https://www.facebook.com/acme">Facebook</a>
        </body></html>
    """,
    "https://acme.example/contact": """
        <html><body><p>Write to info@acme.gr or call 210 123 4567</p></body></html>
    """,
    "https://acme.example/about": """
        <html><body><a href="/team">Our team</a><p>Founded 1999.</p></body></html>
    """,
    "https://acme.example/team": """
        <html><body><p>ceo@acme.gr</p></body></html>
    """,
}


@pytest.fixture
def make_crawler():
    """Factory for FakeSiteCrawler instances."""
    def factory(pages=None, **kwargs):
        kwargs.setdefault('safety', SafetyCaps(max_pages_per_crawl=50, max_concurrent_crawls=1,
                                               crawl_timeout_seconds=10.0))
        return FakeSiteCrawler(ACME_SITE if pages is None else pages, **kwargs)
    return factory


@pytest.fixture
def local_store(tmp_path):
    return LocalStore(str(tmp_path / "local-persistence"))
