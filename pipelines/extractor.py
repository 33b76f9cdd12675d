"""Contact extraction from fetched HTML pages.

Pulls emails, Greek phone numbers, social profile links and contact-page
links out of one page. Every hit keeps the URL it was found on.
"""

import re
import html as html_lib
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse, parse_qs

from bs4 import BeautifulSoup

from .url_utils import classify_page_type, resolve_link

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")
EMAIL_FULL_RE = re.compile(r"^[a-z0-9._%+\-]+@[a-z0-9](?:[a-z0-9\-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9\-]*[a-z0-9])?)*\.[a-z]{2,}$")

OBFUSCATIONS = [
    (re.compile(r"\s*[\[\(\{]\s*(?:at|@|παπάκι)\s*[\]\)\}]\s*", re.I), "@"),
    (re.compile(r"\s*[\[\(\{]\s*(?:dot|τελεία)\s*[\]\)\}]\s*", re.I), "."),
]
SPELLED_EMAIL_RE = re.compile(
    r"\b([a-zA-Z0-9][a-zA-Z0-9._%+\-]*)\s+at\s+([a-zA-Z0-9][a-zA-Z0-9\-]*(?:\s+dot\s+[a-zA-Z0-9\-]+)*)\s+dot\s+([a-zA-Z]{2,})\b",
    re.I,
)
SPELLED_DOT_RE = re.compile(r"\s+dot\s+", re.I)

BLOCKED_EMAIL_DOMAINS = (
    'example.com', 'example.org', 'domain.com', 'yourdomain.com', 'email.com',
    'sentry.io', 'wixpress.com', 'godaddy.com',
)
BAD_EMAIL_SUFFIXES = ('.png', '.jpg', '.jpeg', '.gif', '.webp', '.svg', '.css', '.js')

# +30 / 0030 prefix, then a 10 digit landline (2...) or mobile (69...)
GREEK_PHONE_RE = re.compile(
    r"(?<![\d+])(?:(?:\+|00)\s?30[\s.\-]?)?(?:2|69)(?:[\s.\-]?\d){8,9}(?!\d)"
)

CONTACT_PATH_PATTERNS = (
    '/contact', '/contact-us', '/contactus', '/about', '/about-us', '/team',
    '/staff', '/support', '/help', '/impressum', '/privacy',
    '/επικοινωνια', '/επικοινωνία', '/συνεργασία', '/εταιρεία',
    '/ποιοι-ειμαστε', '/σχετικα', '/σχετικά', '/ομαδα', '/ομάδα',
)
CONTACT_ANCHOR_KEYWORDS = (
    'contact', 'about', 'team', 'staff', 'support', 'help',
    'επικοινωνία', 'επικοινωνια', 'συνεργασία', 'εταιρεία', 'σχετικά', 'σχετικα',
)

SOCIAL_PLATFORMS = ('facebook', 'instagram', 'linkedin', 'twitter', 'youtube')
SOCIAL_IGNORED_SEGMENTS = {
    'sharer', 'sharer.php', 'share', 'share.php', 'intent', 'dialog', 'plugins',
    'login', 'login.php', 'signup', 'home', 'hashtag', 'explore', 'tr', 'p', 'watch',
}

PAGE_CONFIDENCE = {
    'contact': 0.9,
    'about': 0.7,
    'team': 0.7,
    'homepage': 0.6,
    'privacy': 0.3,
    'other': 0.5,
}


@dataclass
class ContactHit:
    """One email or phone occurrence with provenance."""
    value: str
    source_url: str
    context: Optional[str] = None
    page_type: str = 'other'
    confidence: float = 0.5

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'ContactHit':
        return cls(
            value=data['value'],
            source_url=data.get('source_url', ''),
            context=data.get('context'),
            page_type=data.get('page_type', 'other'),
            confidence=float(data.get('confidence', 0.5)),
        )


@dataclass
class PageExtraction:
    """Everything extracted from a single page."""
    url: str
    page_type: str
    emails: List[ContactHit] = field(default_factory=list)
    phones: List[ContactHit] = field(default_factory=list)
    social: Dict[str, str] = field(default_factory=dict)
    links: List[Tuple[str, str]] = field(default_factory=list)
    contact_links: List[str] = field(default_factory=list)
    has_contact_form: bool = False
    title: Optional[str] = None
    text: str = ''


def score_confidence(source_url: str, obfuscated: bool = False) -> float:
    """Confidence that a hit is the business's own contact detail."""
    score = PAGE_CONFIDENCE.get(classify_page_type(source_url), 0.5)
    if obfuscated:
        score += 0.1
    return round(min(score, 1.0), 2)


def extract_context(text: str, needle: str, radius: int = 30) -> Optional[str]:
    """Return up to ``radius`` characters either side of ``needle``."""
    index = text.lower().find(needle.lower())
    if index < 0:
        return None
    start = max(0, index - radius)
    end = min(len(text), index + len(needle) + radius)
    return text[start:end].strip()


def deobfuscate(text: str) -> str:
    """Rewrite ``name [at] domain [dot] gr`` style addresses into plain form."""
    out = text
    for pattern, replacement in OBFUSCATIONS:
        out = pattern.sub(replacement, out)
    return SPELLED_EMAIL_RE.sub(_join_spelled_email, out)


def _join_spelled_email(match) -> str:
    domain = SPELLED_DOT_RE.sub('.', match.group(2))
    return f"{match.group(1)}@{domain}.{match.group(3)}"


def is_blocked_domain(domain: str) -> bool:
    """True for placeholder and tracking domains, including their subdomains."""
    return any(domain == blocked or domain.endswith('.' + blocked) for blocked in BLOCKED_EMAIL_DOMAINS)


def normalize_email(raw: str) -> Optional[str]:
    """Clean and validate an email candidate; None when it is junk."""
    candidate = unquote(raw or '').strip()
    candidate = candidate.split('?', 1)[0]
    candidate = candidate.strip(" \t\r\n\"'<>[](){}.,;:").lower()

    if not EMAIL_FULL_RE.match(candidate):
        return None
    if candidate.endswith(BAD_EMAIL_SUFFIXES):
        return None

    domain = candidate.split('@', 1)[1]
    if is_blocked_domain(domain):
        return None
    return candidate


def normalize_phone(raw: str) -> Optional[str]:
    """Normalize a Greek phone number to ``+30`` followed by 10 digits."""
    digits = re.sub(r"[^\d+]", '', raw or '')

    if digits.startswith('0030'):
        digits = '+' + digits[2:]
    elif digits.startswith('30') and len(digits) == 12:
        digits = '+' + digits
    elif not digits.startswith('+') and len(digits) == 10:
        digits = '+30' + digits

    if re.fullmatch(r"\+30\d{10}", digits):
        return digits
    return None


def canonicalize_social(url: str) -> Optional[Tuple[str, str]]:
    """Map a profile URL to ``(platform, canonical_url)``; None for share links."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.hostname or '').lower()
    if host.startswith('www.') or host.startswith('m.'):
        host = host.split('.', 1)[1]
    segments = [s for s in parsed.path.split('/') if s]

    if host in ('facebook.com', 'fb.com'):
        if not segments or segments[0].lower() in SOCIAL_IGNORED_SEGMENTS:
            return None
        return 'facebook', f"https://www.facebook.com/{segments[0]}"

    if host == 'instagram.com':
        if not segments or segments[0].lower() in SOCIAL_IGNORED_SEGMENTS:
            return None
        return 'instagram', f"https://www.instagram.com/{segments[0]}"

    if host.endswith('linkedin.com'):
        if len(segments) < 2 or segments[0].lower() not in ('company', 'in', 'school'):
            return None
        return 'linkedin', f"https://www.linkedin.com/{segments[0]}/{segments[1]}"

    if host in ('twitter.com', 'x.com'):
        if not segments or segments[0].lower() in SOCIAL_IGNORED_SEGMENTS:
            return None
        return 'twitter', f"https://twitter.com/{segments[0]}"

    if host == 'youtu.be' and segments:
        return 'youtube', f"https://www.youtube.com/watch?v={segments[0]}"

    if host == 'youtube.com':
        if len(segments) >= 2 and segments[0] in ('channel', 'user', 'c'):
            return 'youtube', f"https://www.youtube.com/{segments[0]}/{segments[1]}"
        if segments and segments[0].startswith('@'):
            return 'youtube', f"https://www.youtube.com/{segments[0]}"
        video = parse_qs(parsed.query).get('v')
        if segments and segments[0] == 'watch' and video:
            return 'youtube', f"https://www.youtube.com/watch?v={video[0]}"
    return None


def is_contact_page(url: str, anchor_text: str = '') -> bool:
    """True if the link path or its anchor text looks like a contact/about page."""
    path = unquote(urlparse(url).path or '').lower().rstrip('/')
    for pattern in CONTACT_PATH_PATTERNS:
        if path == pattern or path.endswith(pattern) or path.startswith(pattern + '/') or path.startswith(pattern + '-'):
            return True

    anchor = (anchor_text or '').strip().lower()
    return bool(anchor) and any(keyword in anchor for keyword in CONTACT_ANCHOR_KEYWORDS)


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(['script', 'style', 'noscript', 'template', 'svg']):
        tag.decompose()
    return re.sub(r"\s+", ' ', soup.get_text(' ')).strip()


def _append_hit(hits: List[ContactHit], seen: set, value: str, url: str,
                page_type: str, context: Optional[str], obfuscated: bool = False):
    if value in seen:
        return
    seen.add(value)
    hits.append(ContactHit(
        value=value,
        source_url=url,
        context=context,
        page_type=page_type,
        confidence=score_confidence(url, obfuscated),
    ))


def extract_contacts(url: str, html: str) -> PageExtraction:
    """Extract contacts and outgoing links from one page.

    Args:
        url: Final URL of the page (after redirects)
        html: Raw HTML body

    Returns:
        PageExtraction with per-page deduplicated emails and phones
    """
    page_type = classify_page_type(url)
    extraction = PageExtraction(url=url, page_type=page_type)
    soup = BeautifulSoup(html or '', 'html.parser')

    if soup.title and soup.title.string:
        extraction.title = soup.title.string.strip()

    extraction.has_contact_form = any(
        form.find(['input', 'textarea'], attrs={'type': 'email'}) is not None
        or form.find('textarea') is not None
        for form in soup.find_all('form')
    )

    email_seen: set = set()
    phone_seen: set = set()
    link_seen: set = set()

    for anchor in soup.find_all('a', href=True):
        href = anchor['href'].strip()
        anchor_text = anchor.get_text(' ', strip=True)
        lowered = href.lower()

        if lowered.startswith('mailto:'):
            email = normalize_email(href[7:])
            if email:
                _append_hit(extraction.emails, email_seen, email, url, page_type, anchor_text or None)
            continue

        if lowered.startswith('tel:'):
            phone = normalize_phone(unquote(href[4:]).split('?', 1)[0])
            if phone:
                _append_hit(extraction.phones, phone_seen, phone, url, page_type, anchor_text or None)
            continue

        absolute = resolve_link(url, href)
        if not absolute:
            continue

        social = canonicalize_social(absolute)
        if social:
            platform, profile = social
            extraction.social.setdefault(platform, profile)
            continue

        if absolute in link_seen:
            continue
        link_seen.add(absolute)
        extraction.links.append((absolute, anchor_text))
        if is_contact_page(absolute, anchor_text):
            extraction.contact_links.append(absolute)

    text = _visible_text(soup)
    extraction.text = text
    unescaped = html_lib.unescape(text)

    plain_emails = list(dict.fromkeys(EMAIL_RE.findall(unescaped)))
    for raw in plain_emails:
        email = normalize_email(raw)
        if email:
            _append_hit(extraction.emails, email_seen, email, url, page_type,
                        extract_context(unescaped, raw))

    revealed = deobfuscate(unescaped)
    if revealed != unescaped:
        for raw in EMAIL_RE.findall(revealed):
            if raw in plain_emails:
                continue
            email = normalize_email(raw)
            if email:
                _append_hit(extraction.emails, email_seen, email, url, page_type,
                            extract_context(revealed, raw), obfuscated=True)

    for match in GREEK_PHONE_RE.finditer(unescaped):
        phone = normalize_phone(match.group(0))
        if phone:
            _append_hit(extraction.phones, phone_seen, phone, url, page_type,
                        extract_context(unescaped, match.group(0)))

    logger.debug(
        f"Extracted {len(extraction.emails)} emails, {len(extraction.phones)} phones, "
        f"{len(extraction.social)} social links from {url}"
    )
    return extraction
