"""URL helpers for bounded website crawls.

Canonicalization, same-domain scoping, path skip rules and seed URL
generation. Nothing here performs I/O.
"""

import logging
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse, unquote

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {'http': 80, 'https': 443}

# Matched against the leading path segments
BLOCKED_PATH_PREFIXES: Tuple[str, ...] = (
    '/login', '/logout', '/signin', '/signup', '/register',
    '/admin', '/wp-admin', '/wp-login.php',
    '/user', '/users', '/account', '/accounts', '/my-account',
    '/cart', '/checkout', '/basket',
)

# Sections that never carry contact details; matched against any segment
SKIPPED_SECTIONS = frozenset({
    'blog', 'news', 'articles', 'category', 'tag', 'tags', 'author',
    'archive', 'search', 'sitemap', 'feed',
})

SKIPPED_SUFFIXES: Tuple[str, ...] = ('.xml', '.rss', '.json')

NON_HTML_EXTENSIONS = frozenset({
    'pdf', 'jpg', 'jpeg', 'png', 'gif', 'webp', 'svg', 'ico',
    'mp4', 'mp3', 'wav', 'avi', 'mov',
    'zip', 'rar', '7z', 'tar', 'gz',
    'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx',
    'exe', 'dmg', 'deb', 'rpm', 'css', 'js',
})

SEED_PATHS: Tuple[str, ...] = (
    '/contact',
    '/about',
    '/team',
    '/privacy',
    '/επικοινωνια',
    '/επικοινωνία',
    '/σχετικα',
    '/σχετικά',
    '/ομαδα',
    '/ομάδα',
    '/πολιτικη-απορρητου',
    '/πολιτική-απορρήτου',
)

PAGE_TYPE_KEYWORDS = (
    ('contact', ('contact', 'epikoinonia', 'επικοινων', 'impressum', 'support', 'help')),
    ('about', ('about', 'sxetika', 'σχετικ', 'εταιρ', 'ποιοι-ειμαστε', 'company')),
    ('team', ('team', 'staff', 'omada', 'ομαδ', 'ομάδ')),
    ('privacy', ('privacy', 'gdpr', 'απορρητ', 'απόρρητ')),
)


def normalize_domain(host: str) -> str:
    """Lower-case a host name and strip a leading ``www.``."""
    host = (host or '').strip().lower().rstrip('.')
    if host.startswith('www.'):
        host = host[4:]
    return host


def ensure_scheme(url: str) -> str:
    """Prefix bare domains (``acme.gr``) with https."""
    url = (url or '').strip()
    if not url:
        return url
    if '://' not in url:
        url = 'https://' + url.lstrip('/')
    return url


def canonicalize(url: str) -> str:
    """Normalize a URL to the form used for visited checks.

    Drops the fragment, lower-cases scheme and host, strips ``www.``,
    removes default ports and the trailing slash (except at the root).
    The query string is kept.
    """
    parsed = urlparse(ensure_scheme(url))
    scheme = (parsed.scheme or 'https').lower()
    host = normalize_domain(parsed.hostname or '')

    netloc = host
    if parsed.port and parsed.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parsed.port}"

    path = parsed.path or '/'
    if len(path) > 1:
        path = path.rstrip('/') or '/'

    return urlunparse((scheme, netloc, path, '', parsed.query, ''))


def get_host(url: str) -> str:
    """Return the canonical host of ``url`` (no ``www.``, lower case)."""
    return normalize_domain(urlparse(ensure_scheme(url)).hostname or '')


def is_same_domain(url: str, seed_url: str) -> bool:
    """Check whether ``url`` stays inside the domain of ``seed_url``.

    Hosts match when they are equal after canonicalization, or when the
    host of ``url`` is a parent domain of the seed host (``a.example.com``
    may reach ``example.com``). Siblings and deeper subdomains never match.
    """
    host = get_host(url)
    seed_host = get_host(seed_url)
    if not host or not seed_host:
        return False
    if host == seed_host:
        return True
    return '.' in host and seed_host.endswith('.' + host)


def should_skip_path(path: str, extra_prefixes: Tuple[str, ...] = ()) -> bool:
    """Return True for paths that are never fetched (login, admin, cart, blog...).

    ``extra_prefixes`` adds site-specific blocked prefixes from the crawl config.
    """
    path = unquote(path or '/').lower()
    if not path.startswith('/'):
        path = '/' + path
    trimmed = path.rstrip('/') or '/'

    for prefix in BLOCKED_PATH_PREFIXES + tuple(p.lower().rstrip('/') for p in extra_prefixes):
        if trimmed == prefix or trimmed.startswith(prefix + '/'):
            return True

    if trimmed.endswith(SKIPPED_SUFFIXES):
        return True

    segments = [s for s in trimmed.split('/') if s]
    return any(segment in SKIPPED_SECTIONS for segment in segments)


def is_crawlable_url(url: str) -> bool:
    """Only http(s) URLs that do not point at binary or document files."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False

    last_segment = parsed.path.rsplit('/', 1)[-1].lower()
    if '.' in last_segment:
        extension = last_segment.rsplit('.', 1)[-1]
        if extension in NON_HTML_EXTENSIONS:
            return False
    return True


def root_url(url: str) -> str:
    """Return ``scheme://host/`` for ``url``."""
    parsed = urlparse(ensure_scheme(url))
    return urlunparse((parsed.scheme or 'https', parsed.netloc, '/', '', '', ''))


def resolve_link(base_url: str, href: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None for non-navigational links."""
    href = (href or '').strip()
    if not href or href.startswith(('#', 'mailto:', 'tel:', 'javascript:', 'data:')):
        return None
    try:
        absolute = urljoin(base_url, href)
    except ValueError:
        return None
    return absolute.split('#', 1)[0]


def generate_seed_urls(base_url: str) -> List[str]:
    """Root, the original URL, then likely contact/about/team/privacy pages.

    Greek path variants are included both with and without accents.
    Duplicates (by canonical form) are removed, order is preserved.
    """
    original = ensure_scheme(base_url)
    root = root_url(original)
    candidates = [root, original] + [urljoin(root, path) for path in SEED_PATHS]

    seeds: List[str] = []
    seen = set()
    for candidate in candidates:
        key = canonicalize(candidate)
        if key in seen:
            continue
        seen.add(key)
        seeds.append(candidate)
    return seeds


def classify_page_type(url: str) -> str:
    """Classify a page as homepage, contact, about, team, privacy or other."""
    path = unquote(urlparse(ensure_scheme(url)).path or '/').lower()
    if path in ('', '/') or path.rstrip('/') in ('/index.html', '/index.php', '/home'):
        return 'homepage'
    for page_type, keywords in PAGE_TYPE_KEYWORDS:
        if any(keyword in path for keyword in keywords):
            return page_type
    return 'other'
