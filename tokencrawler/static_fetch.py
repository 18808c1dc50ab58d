"""
Static link discovery fallback using requests + BeautifulSoup.

Used by the discovery phases when a browser navigation times out; the
blocking request runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36 tokencrawler"
)


@dataclass
class StaticPage:
    url: str
    status_code: int
    title: str = ""
    hrefs: List[str] = field(default_factory=list)


def fetch_page(url: str, user_agent: Optional[str] = None, timeout: float = 15.0) -> StaticPage:
    """Fetch ``url`` and collect every ``<a href>``. HTTP errors raise ``requests.HTTPError``."""
    headers = {
        'User-Agent': user_agent or DEFAULT_USER_AGENT,
        'Accept': 'text/html,application/xhtml+xml',
        'Accept-Language': 'en-US,en;q=0.9',
    }
    response = requests.get(url, headers=headers, timeout=timeout)
    response.raise_for_status()

    soup = BeautifulSoup(response.text, "lxml")
    title = ""
    t = soup.find('title')
    if t:
        title = t.get_text(strip=True)

    seen = set()
    hrefs = []
    for a in soup.find_all('a', href=True):
        href = a['href'].strip()
        if href and href not in seen:
            seen.add(href)
            hrefs.append(href)

    return StaticPage(url=response.url or url, status_code=response.status_code, title=title, hrefs=hrefs)


async def fetch_page_async(url: str, user_agent: Optional[str] = None, timeout: float = 15.0) -> StaticPage:
    logger.info(f"[STATIC-FALLBACK] {url[:70]}")
    return await asyncio.to_thread(fetch_page, url, user_agent, timeout)
