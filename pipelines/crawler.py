"""Website contact crawler.

Runs a bounded breadth-first crawl of one business website and collects
emails, phones, social profiles and contact pages into a ``CrawlResult``.
"""

import asyncio
import logging
import time
import random
import weakref
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import aiohttp

from config.crawl_config import CrawlConfig, get_crawl_config
from observability.prometheus_metrics import record_crawl_result, record_page_fetch
from .extractor import ContactHit, PageExtraction, extract_contacts, is_contact_page
from .url_utils import (
    canonicalize,
    classify_page_type,
    ensure_scheme,
    generate_seed_urls,
    is_crawlable_url,
    is_same_domain,
    resolve_link,
    root_url,
    should_skip_path,
)

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_REDIRECTS = 5

# Crawl slots shared by every ContactCrawler on a loop, keyed by concurrency limit
_crawl_slots = weakref.WeakKeyDictionary()


def crawl_slot(limit: int) -> asyncio.Semaphore:
    """Return the process-wide crawl semaphore for ``limit`` on the running loop."""
    slots = _crawl_slots.setdefault(asyncio.get_running_loop(), {})
    if limit not in slots:
        slots[limit] = asyncio.Semaphore(limit)
    return slots[limit]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CrawlStatus(str, Enum):
    """Outcome of a website crawl."""
    NOT_CRAWLED = "not_crawled"
    PARTIAL = "partial"
    COMPLETED = "completed"


@dataclass
class FetchResult:
    """Result of fetching a single URL."""
    url: str
    status_code: int
    content: Optional[str] = None
    content_type: Optional[str] = None
    error: Optional[str] = None
    response_time: Optional[float] = None
    retry_count: int = 0
    final_url: Optional[str] = None  # After redirects
    location: Optional[str] = None  # Unfollowed redirect target

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


@dataclass
class PageRecord:
    """A fetched page, handed to the optional page sink."""
    url: str
    final_url: str
    depth: int
    status_code: int
    page_type: str = 'other'
    title: Optional[str] = None
    content_type: Optional[str] = None
    error: Optional[str] = None
    emails_found: int = 0
    phones_found: int = 0
    has_contact_form: bool = False
    fetched_at: Optional[datetime] = None

    def __post_init__(self):
        if self.fetched_at is None:
            self.fetched_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'final_url': self.final_url,
            'depth': self.depth,
            'status_code': self.status_code,
            'page_type': self.page_type,
            'title': self.title,
            'content_type': self.content_type,
            'error': self.error,
            'emails_found': self.emails_found,
            'phones_found': self.phones_found,
            'has_contact_form': self.has_contact_form,
            'fetched_at': format_dt(self.fetched_at),
        }


@dataclass
class CrawlResult:
    """Authoritative crawl outcome for one (business, dataset) pair."""
    business_id: str
    dataset_id: str
    website_url: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    pages_visited: int = 0
    crawl_status: CrawlStatus = CrawlStatus.NOT_CRAWLED
    emails: List[ContactHit] = field(default_factory=list)
    phones: List[ContactHit] = field(default_factory=list)
    contact_pages: List[str] = field(default_factory=list)
    social: Dict[str, str] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = utcnow()
        self.crawl_status = CrawlStatus(self.crawl_status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'business_id': self.business_id,
            'dataset_id': self.dataset_id,
            'website_url': self.website_url,
            'started_at': format_dt(self.started_at),
            'finished_at': format_dt(self.finished_at),
            'pages_visited': self.pages_visited,
            'crawl_status': self.crawl_status.value,
            'emails': [hit.to_dict() for hit in self.emails],
            'phones': [hit.to_dict() for hit in self.phones],
            'contact_pages': list(self.contact_pages),
            'social': dict(self.social),
            'errors': list(self.errors),
            'created_at': format_dt(self.created_at),
            'updated_at': format_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlResult':
        return cls(
            business_id=str(data['business_id']),
            dataset_id=str(data['dataset_id']),
            website_url=data.get('website_url', ''),
            started_at=parse_dt(data.get('started_at')),
            finished_at=parse_dt(data.get('finished_at')),
            pages_visited=int(data.get('pages_visited') or 0),
            crawl_status=data.get('crawl_status') or CrawlStatus.NOT_CRAWLED,
            emails=[ContactHit.from_dict(e) for e in data.get('emails') or []],
            phones=[ContactHit.from_dict(p) for p in data.get('phones') or []],
            contact_pages=list(data.get('contact_pages') or []),
            social=dict(data.get('social') or {}),
            errors=list(data.get('errors') or []),
            created_at=parse_dt(data.get('created_at')),
            updated_at=parse_dt(data.get('updated_at')),
        )


@dataclass
class SafetyCaps:
    """Hard limits that no plan can raise."""
    max_pages_per_crawl: int = 50
    max_concurrent_crawls: int = 1
    crawl_timeout_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: CrawlConfig) -> 'SafetyCaps':
        settings = config.get_safety_settings()
        return cls(
            max_pages_per_crawl=int(settings.get('max_pages_per_crawl', 50)),
            max_concurrent_crawls=int(settings.get('max_concurrent_crawls', 1)),
            crawl_timeout_seconds=float(settings.get('crawl_timeout_seconds', 60.0)),
        )


class VisitedSet:
    """Canonical URLs fetched or queued during one crawl, capped at ``capacity``."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._urls: Set[str] = set()
        self._redirects: Set[str] = set()

    def __contains__(self, url: str) -> bool:
        key = canonicalize(url)
        return key in self._urls or key in self._redirects

    def __len__(self) -> int:
        return len(self._urls)

    @property
    def full(self) -> bool:
        return len(self._urls) >= self.capacity

    def add(self, url: str) -> bool:
        """Add ``url``; False if already present or the set is full."""
        key = canonicalize(url)
        if key in self._urls or key in self._redirects or self.full:
            return False
        self._urls.add(key)
        return True

    def mark(self, url: str) -> None:
        """Record a redirect target so it is not fetched again."""
        key = canonicalize(url)
        if key not in self._urls:
            self._redirects.add(key)


PageSink = Callable[[PageRecord], Awaitable[None]]


@dataclass
class _CrawlState:
    seed_url: str
    homepage_url: str
    max_depth: int
    pages_limit: int
    result: CrawlResult
    visited: VisitedSet
    probes: List[str]
    page_sink: Optional[PageSink] = None
    frontier: Deque[Tuple[str, int]] = field(default_factory=deque)
    email_keys: Set[Tuple[str, str]] = field(default_factory=set)
    phone_keys: Set[Tuple[str, str]] = field(default_factory=set)
    homepage_ok: bool = False
    probed: bool = False
    truncated: bool = False
    timed_out: bool = False


class ContactCrawler:
    """Asynchronous single-site crawler that collects contact details."""

    def __init__(self,
                 config: CrawlConfig = None,
                 safety: SafetyCaps = None,
                 user_agent: str = None,
                 page_timeout: float = None,
                 delay_between_requests: float = None,
                 max_retries: int = None):
        """Initialize crawler.

        Args:
            config: Crawl configuration (defaults to the global one)
            safety: Safety caps (defaults to the configured caps)
            user_agent: User agent string (defaults to config)
            page_timeout: Per-page timeout in seconds
            delay_between_requests: Pause between two page fetches
            max_retries: Retries for transient network errors
        """
        self.config = config or get_crawl_config()
        fetch = self.config.get_fetch_settings()

        self.safety = safety or SafetyCaps.from_config(self.config)
        self.user_agent = user_agent or self.config.get_user_agent()
        self.page_timeout = page_timeout if page_timeout is not None else float(fetch.get('page_timeout_seconds', 12.0))
        self.connect_timeout = float(fetch.get('connect_timeout_seconds', 6.0))
        self.max_response_bytes = int(fetch.get('max_response_bytes', 1_500_000))
        self.delay_between_requests = (
            delay_between_requests if delay_between_requests is not None
            else float(fetch.get('delay_between_requests', 0.4))
        )
        self.max_retries = max_retries if max_retries is not None else int(fetch.get('max_retries', 1))
        self.retry_delay = float(fetch.get('base_retry_delay', 0.5))
        self.max_retry_delay = float(fetch.get('max_retry_delay', 4.0))
        self.extra_skip_paths = tuple(self.config.get_extra_skip_paths())

        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(limit=4)
            timeout = aiohttp.ClientTimeout(total=self.page_timeout, connect=self.connect_timeout)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={'User-Agent': self.user_agent, 'Accept': 'text/html,application/xhtml+xml'}
            )

    async def close(self):
        """Close the crawler session."""
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    def _is_retryable_error(self, exception: Optional[Exception], status_code: int = None) -> bool:
        """Determine if an error is retryable."""
        if status_code in (429, 502, 503, 504):
            return True

        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True

        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ServerDisconnectedError))

    def _scope_violation(self, url: str, scope_url: str) -> Optional[str]:
        """Why ``url`` may not be fetched while crawling ``scope_url``; None if it may."""
        if not is_crawlable_url(url):
            return f"Not a crawlable URL: {url}"
        try:
            if not is_same_domain(url, scope_url):
                return f"off-domain: {url}"
            if should_skip_path(urlparse(url).path, self.extra_skip_paths):
                return f"skipped path: {url}"
        except ValueError:
            return f"Malformed URL: {url}"
        return None

    async def _fetch_url(self, url: str, scope_url: Optional[str] = None) -> FetchResult:
        """Fetch a single HTML page, following redirects inside ``scope_url``.

        Redirects are followed by hand, at most ``MAX_REDIRECTS`` hops. A hop
        that leaves the domain of ``scope_url`` (default: ``url``) or lands on
        a skipped path is refused without being requested. Never raises for
        network problems; failures come back as a FetchResult with ``error`` set.
        """
        await self._ensure_session()
        start_time = time.time()
        scope_url = scope_url or url
        current = url

        for _hop in range(MAX_REDIRECTS + 1):
            fetch = await self._request(current, start_time)
            fetch.url = url
            if fetch.location is None:
                return fetch

            target = resolve_link(current, fetch.location)
            violation = (self._scope_violation(target, scope_url) if target
                         else f"Invalid redirect location: {fetch.location!r}")
            if violation is not None:
                logger.info(f"Refusing redirect from {current}: {violation}")
                return FetchResult(
                    url=url,
                    status_code=fetch.status_code,
                    error=f"Redirect refused ({violation})",
                    response_time=time.time() - start_time,
                    retry_count=fetch.retry_count,
                    final_url=target or current
                )
            current = target

        return FetchResult(url=url, status_code=fetch.status_code,
                           error=f"Too many redirects (more than {MAX_REDIRECTS})",
                           response_time=time.time() - start_time, final_url=current)

    async def _request(self, url: str, start_time: float) -> FetchResult:
        """Request ``url`` once, retrying transient failures; redirects are not followed."""
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")
                async with self.session.get(url, allow_redirects=False) as response:
                    final_url = str(response.url)
                    content_type = response.headers.get('content-type', '')

                    if self._is_retryable_error(None, response.status) and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {response.status} for {url}, retrying in {delay:.2f}s")
                        await asyncio.sleep(delay)
                        continue

                    location = response.headers.get('Location')
                    if response.status in REDIRECT_STATUSES and location:
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            content_type=content_type,
                            response_time=time.time() - start_time,
                            retry_count=attempt,
                            final_url=final_url,
                            location=location
                        )

                    if not 200 <= response.status < 300:
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            error=f"HTTP {response.status}",
                            content_type=content_type,
                            response_time=time.time() - start_time,
                            retry_count=attempt,
                            final_url=final_url
                        )

                    if not content_type.lower().startswith(HTML_CONTENT_TYPES):
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            error=f"Non-HTML content type: {content_type or 'unknown'}",
                            content_type=content_type,
                            response_time=time.time() - start_time,
                            retry_count=attempt,
                            final_url=final_url
                        )

                    body = await response.content.read(self.max_response_bytes + 1)
                    if len(body) > self.max_response_bytes:
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            error=f"Response larger than {self.max_response_bytes} bytes",
                            content_type=content_type,
                            response_time=time.time() - start_time,
                            retry_count=attempt,
                            final_url=final_url
                        )

                    content = body.decode(response.charset or 'utf-8', errors='replace')
                    return FetchResult(
                        url=url,
                        status_code=response.status,
                        content=content,
                        content_type=content_type,
                        response_time=time.time() - start_time,
                        retry_count=attempt,
                        final_url=final_url
                    )

            except (asyncio.TimeoutError, aiohttp.ServerTimeoutError) as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Timeout fetching {url}, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Timeout fetching {url} after {attempt + 1} attempts")
                break

            except (aiohttp.ClientError, UnicodeError, LookupError, ValueError) as e:
                last_exception = e
                if attempt < self.max_retries and self._is_retryable_error(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Client error fetching {url}: {e}, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Client error fetching {url} after {attempt + 1} attempts: {e}")
                break

        if isinstance(last_exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return FetchResult(url=url, status_code=408, error="Timeout",
                               response_time=time.time() - start_time, retry_count=self.max_retries)

        message = "Unknown error"
        if last_exception is not None:
            message = str(last_exception) or type(last_exception).__name__
        return FetchResult(
            url=url,
            status_code=0,
            error=message,
            response_time=time.time() - start_time,
            retry_count=self.max_retries
        )

    def _enqueue(self, state: _CrawlState, url: str, depth: int) -> None:
        """Append ``url`` to the frontier if it passes every crawl filter."""
        if depth > state.max_depth or self._scope_violation(url, state.seed_url):
            return
        if url in state.visited:
            return
        if not state.visited.add(url):
            # Set is full: this page can never be fetched within the budget
            state.truncated = True
            return
        state.frontier.append((url, depth))

    def _merge(self, state: _CrawlState, extraction: PageExtraction) -> None:
        result = state.result
        for hit in extraction.emails:
            key = (hit.value, hit.source_url)
            if key not in state.email_keys:
                state.email_keys.add(key)
                result.emails.append(hit)
        for hit in extraction.phones:
            key = (hit.value, hit.source_url)
            if key not in state.phone_keys:
                state.phone_keys.add(key)
                result.phones.append(hit)
        for platform, profile in extraction.social.items():
            result.social.setdefault(platform, profile)

        pages = [extraction.url] if is_contact_page(extraction.url) else []
        pages.extend(link for link in extraction.contact_links if is_same_domain(link, state.seed_url))
        for page in pages:
            page = canonicalize(page)
            if page not in result.contact_pages:
                result.contact_pages.append(page)

    async def _process(self, state: _CrawlState, url: str, depth: int) -> Optional[PageExtraction]:
        fetch = await self._fetch_url(url, state.seed_url)
        state.result.pages_visited += 1
        record_page_fetch(fetch.ok, fetch.error)

        final_url = fetch.final_url or url
        if fetch.ok and not is_same_domain(final_url, state.seed_url):
            fetch.error = f"Redirected off-domain to {final_url}"

        record = PageRecord(url=url, final_url=final_url, depth=depth,
                            status_code=fetch.status_code, page_type=classify_page_type(final_url),
                            content_type=fetch.content_type, error=fetch.error)

        extraction = None
        if fetch.error is None:
            state.visited.mark(final_url)
            extraction = extract_contacts(final_url, fetch.content or '')
            self._merge(state, extraction)
            record.page_type = extraction.page_type
            record.title = extraction.title
            record.emails_found = len(extraction.emails)
            record.phones_found = len(extraction.phones)
            record.has_contact_form = extraction.has_contact_form
        else:
            error = {'url': url, 'message': fetch.error}
            if fetch.status_code:
                error['status_code'] = fetch.status_code
            state.result.errors.append(error)
            logger.info(f"Fetch failed for {url}: {fetch.error}")

        if state.page_sink is not None:
            await state.page_sink(record)
        return extraction

    async def _traverse(self, state: _CrawlState) -> None:
        fetched = 0
        while state.frontier:
            url, depth = state.frontier.popleft()
            if state.result.pages_visited >= state.pages_limit:
                state.truncated = True
                break

            if fetched and self.delay_between_requests > 0:
                await asyncio.sleep(self.delay_between_requests)
            fetched += 1

            extraction = await self._process(state, url, depth)
            is_homepage = canonicalize(url) == canonicalize(state.homepage_url)
            if is_homepage and extraction is not None:
                state.homepage_ok = True

            if extraction is not None and depth < state.max_depth:
                for link, _anchor in extraction.links:
                    self._enqueue(state, link, depth + 1)

            if is_homepage and not state.probed:
                state.probed = True
                if extraction is None or not extraction.contact_links:
                    for probe in state.probes:
                        self._enqueue(state, probe, 1)

    def _derive_status(self, state: _CrawlState) -> CrawlStatus:
        if (state.homepage_ok and not state.truncated and not state.timed_out
                and not state.result.errors):
            return CrawlStatus.COMPLETED
        return CrawlStatus.PARTIAL

    async def crawl(self, business_id: str, website_url: str, max_depth: int,
                    pages_limit: int, dataset_id: str,
                    page_sink: Optional[PageSink] = None) -> CrawlResult:
        """Crawl one website within depth and page budgets.

        Args:
            business_id: Business the website belongs to
            website_url: Website to crawl (scheme optional)
            max_depth: Maximum hops from the seed (already plan-gated)
            pages_limit: Maximum pages to fetch (already plan-gated)
            dataset_id: Dataset the business belongs to
            page_sink: Optional coroutine receiving every fetched page

        Returns:
            CrawlResult with status ``completed`` or ``partial``
        """
        if max_depth is None or max_depth < 0:
            raise ValueError(f"Invalid max_depth: {max_depth!r}")
        if pages_limit is None or pages_limit < 1:
            raise ValueError(f"Invalid pages_limit: {pages_limit!r}")
        seed_url = ensure_scheme(website_url)
        if not is_crawlable_url(seed_url):
            raise ValueError(f"Invalid website URL: {website_url!r}")

        pages_limit = min(pages_limit, self.safety.max_pages_per_crawl)

        async with crawl_slot(self.safety.max_concurrent_crawls):
            result = CrawlResult(business_id=str(business_id), dataset_id=str(dataset_id),
                                 website_url=website_url)
            homepage = root_url(seed_url)
            seeds = generate_seed_urls(seed_url)
            initial = [homepage]
            if canonicalize(seed_url) != canonicalize(homepage):
                initial.append(seed_url)
            initial_keys = {canonicalize(u) for u in initial}

            state = _CrawlState(
                seed_url=seed_url,
                homepage_url=homepage,
                max_depth=max_depth,
                pages_limit=pages_limit,
                result=result,
                visited=VisitedSet(pages_limit),
                probes=[s for s in seeds if canonicalize(s) not in initial_keys],
                page_sink=page_sink,
            )
            for url in initial:
                self._enqueue(state, url, 0)

            logger.info(f"Crawling {seed_url} for business {business_id} "
                        f"(max_depth={max_depth}, pages_limit={pages_limit})")
            start = time.monotonic()
            try:
                await asyncio.wait_for(self._traverse(state), timeout=self.safety.crawl_timeout_seconds)
            except asyncio.TimeoutError:
                state.timed_out = True
                logger.warning(f"Crawl of {seed_url} hit the {self.safety.crawl_timeout_seconds}s timeout")
                result.errors.append({'url': seed_url,
                                      'message': f"Crawl timed out after {self.safety.crawl_timeout_seconds}s"})

            result.finished_at = utcnow()
            result.crawl_status = self._derive_status(state)
            record_crawl_result(result.crawl_status.value, time.monotonic() - start,
                                len(result.emails), len(result.phones))

            logger.info(f"Crawl of {seed_url} finished: {result.crawl_status.value}, "
                        f"{result.pages_visited} pages, {len(result.emails)} emails, "
                        f"{len(result.phones)} phones, {len(result.errors)} errors")
            return result


# Convenience functions
async def crawl_website(business_id: str, website_url: str, max_depth: int,
                        pages_limit: int, dataset_id: str) -> CrawlResult:
    """Crawl a single website with a throwaway crawler."""
    async with ContactCrawler() as crawler:
        return await crawler.crawl(business_id, website_url, max_depth, pages_limit, dataset_id)


def crawl_website_sync(business_id: str, website_url: str, max_depth: int,
                       pages_limit: int, dataset_id: str) -> CrawlResult:
    """Synchronous wrapper for crawl_website."""
    return asyncio.run(crawl_website(business_id, website_url, max_depth, pages_limit, dataset_id))
