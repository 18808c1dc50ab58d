"""
Utility Functions
URL normalization, internal/file link tests and small helpers shared by the phases.
"""

import hashlib
import logging
import re
from typing import Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlparse, urlunparse

from .errors import ValidationError

logger = logging.getLogger(__name__)


class URLNormalizer:
    """
    Handles URL normalization so the same page is never listed twice.
    Removes fragments and tracking params, collapses slashes, trims the trailing slash.
    """

    # Common tracking parameters to remove
    TRACKING_PARAMS = {
        'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
        'fbclid', 'gclid', 'ref', 'mc_cid', 'mc_eid',
        '_ga', '_gid', 'dclid',
    }

    # Non-HTML resources; listed under skipped_file_urls instead of crawled
    FILE_EXTENSIONS = {
        '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp', '.ico',
        '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx', '.csv',
        '.zip', '.rar', '.tar', '.gz', '.7z',
        '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.webm',
        '.css', '.js', '.json', '.xml', '.rss', '.atom', '.txt',
        '.woff', '.woff2', '.ttf', '.eot', '.otf',
    }

    def __init__(self, remove_tracking_params: bool = True, remove_fragments: bool = True):
        self.remove_tracking_params = remove_tracking_params
        self.remove_fragments = remove_fragments

    def normalize(self, url: str, base_url: Optional[str] = None) -> Optional[str]:
        """
        Normalize a URL for consistent comparison.

        Returns:
            Normalized URL string or None if not an http(s) URL
        """
        if not url:
            return None
        url = url.strip()

        if url.lower().startswith(('javascript:', 'mailto:', 'tel:', 'data:', '#')):
            return None

        if base_url:
            url = urljoin(base_url, url)

        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return None

        path = re.sub(r'/+', '/', parsed.path or '/')
        if path != '/' and path.endswith('/'):
            path = path.rstrip('/')

        query = parsed.query
        if query and self.remove_tracking_params:
            params = parse_qs(query, keep_blank_values=True)
            filtered = {k: v for k, v in sorted(params.items()) if k.lower() not in self.TRACKING_PARAMS}
            query = urlencode(filtered, doseq=True)

        fragment = '' if self.remove_fragments else parsed.fragment
        return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.params, query, fragment))

    @staticmethod
    def _bare_host(url: str) -> str:
        host = urlparse(url).netloc.lower()
        return host[4:] if host.startswith('www.') else host

    def is_internal(self, url: str, base_url: str) -> bool:
        """Same host as ``base_url`` (``www.`` ignored)."""
        absolute = urljoin(base_url, url)
        if urlparse(absolute).scheme not in ('http', 'https'):
            return False
        return self._bare_host(absolute) == self._bare_host(base_url)

    def is_file(self, url: str) -> bool:
        path = urlparse(url).path.lower()
        return any(path.endswith(ext) for ext in self.FILE_EXTENSIONS)


_default_normalizer = URLNormalizer()


def normalize_url(url: str, base_url: Optional[str] = None) -> Optional[str]:
    return _default_normalizer.normalize(url, base_url)


def is_internal_url(url: str, base_url: str) -> bool:
    return _default_normalizer.is_internal(url, base_url)


def is_file_url(url: str) -> bool:
    return _default_normalizer.is_file(url)


def validate_url(url: str) -> str:
    """Return the normalized start URL or raise ValidationError."""
    if not url or not isinstance(url, str):
        raise ValidationError("A start URL is required", context={"field": "url"})
    normalized = normalize_url(url)
    if normalized is None:
        raise ValidationError(
            f"Invalid URL: {url!r}",
            context={"url": url},
            hint="Use a full http(s) URL, e.g. https://example.com",
        )
    return normalized


def slugify(url: str, max_length: int = 80) -> str:
    """
    File-system safe name for a page URL.

    ``https://example.com/about/team`` -> ``about-team-<hash>``; the root
    page is ``home-<hash>``. The 8-character hash of the full URL is always
    appended, so URLs that read the same once punctuation and case are
    folded (``/a/b`` and ``/a-b``) still get different names. Slugs only
    ever contain ``[a-z0-9-]``.
    """
    parsed = urlparse(url)
    raw = parsed.path.strip('/')
    if parsed.query:
        raw = f"{raw}-{parsed.query}"
    readable = re.sub(r'[^a-zA-Z0-9]+', '-', raw).strip('-').lower() or 'home'
    digest = hashlib.sha1(url.encode('utf-8')).hexdigest()[:8]
    readable = readable[:max_length - 9].rstrip('-')
    return f"{readable}-{digest}"
