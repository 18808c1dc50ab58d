"""
Shared fixtures: an in-memory browser capability and a scripted fake site.

The fakes implement exactly what the pool and phase tasks use:
``launcher.launch()``, ``browser.new_page()`` / ``close()``,
``page.goto()`` / ``evaluate()`` / ``close()``.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from tokencrawler.phases import LINKS_JS, METADATA_JS, STYLE_SAMPLE_JS


class FakeSite:
    """URL → links / body classes / HTTP status, plus a per-navigation delay."""

    def __init__(self, links: Optional[Dict[str, List[str]]] = None,
                 body_classes: Optional[Dict[str, List[str]]] = None,
                 status: Optional[Dict[str, int]] = None,
                 delay: float = 0.0):
        self.links = links or {}
        self.body_classes = body_classes or {}
        self.status = status or {}
        self.delay = delay
        self.visits: List[str] = []

    @classmethod
    def build(cls, n_links: int, base: str = "https://example.com/", children: bool = False,
              groups: int = 3, delay: float = 0.0) -> "FakeSite":
        """Home page linking to ``n_links`` pages; optionally each page links to one child."""
        links = {base: [f"/page-{i}" for i in range(n_links)]}
        body = {base: ["home"]}
        for i in range(n_links):
            url = f"{base}page-{i}"
            links[url] = [f"/page-{i}/child"] if children else ["/"]
            body[url] = [f"template-{i % groups}"]
            body[f"{url}/child"] = [f"template-{i % groups}"]
        return cls(links=links, body_classes=body, delay=delay)


class FakeResponse:
    def __init__(self, status: int):
        self.status = status


class FakePage:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.url = "about:blank"
        self.closed = False

    @property
    def site(self) -> FakeSite:
        return self.browser.launcher.site

    async def goto(self, url, wait_until=None, timeout=None):
        if self.site.delay:
            await asyncio.sleep(self.site.delay)
        self.site.visits.append(url)
        self.url = url
        return FakeResponse(self.site.status.get(url, 200))

    async def evaluate(self, script, arg=None):
        if script == LINKS_JS:
            return list(self.site.links.get(self.url, []))
        if script == METADATA_JS:
            return {
                "title": f"Title of {self.url}",
                "description": "",
                "body_classes": list(self.site.body_classes.get(self.url, [])),
                "components": [],
            }
        if script == STYLE_SAMPLE_JS:
            return {cat: {"sample": {"1px": 1}} for cat in arg}
        return None

    async def close(self):
        if not self.closed:
            self.closed = True
            self.browser.launcher.open_pages -= 1


class FakeBrowser:
    def __init__(self, launcher: "FakeLauncher"):
        self.launcher = launcher
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self):
        if self.closed:
            raise RuntimeError("Target closed")
        page = FakePage(self)
        self.pages.append(page)
        self.launcher.open_pages += 1
        self.launcher.peak_open_pages = max(self.launcher.peak_open_pages, self.launcher.open_pages)
        return page

    async def close(self):
        self.closed = True


class FakeLauncher:
    """Counts launches and open pages.

    The first ``fail_launches`` launches raise, as do the launches whose
    1-based attempt number is in ``fail_on``.
    """

    def __init__(self, site: Optional[FakeSite] = None, fail_launches: int = 0,
                 fail_on: Iterable[int] = ()):
        self.site = site or FakeSite()
        self.fail_launches = fail_launches
        self.fail_on = set(fail_on)
        self.browsers: List[FakeBrowser] = []
        self.launch_attempts = 0
        self.open_pages = 0
        self.peak_open_pages = 0

    async def launch(self):
        self.launch_attempts += 1
        if self.fail_launches > 0:
            self.fail_launches -= 1
            raise RuntimeError("browser failed to start")
        if self.launch_attempts in self.fail_on:
            raise RuntimeError(f"browser failed to start (attempt {self.launch_attempts})")
        browser = FakeBrowser(self)
        self.browsers.append(browser)
        return browser

    @property
    def all_closed(self) -> bool:
        return all(b.closed for b in self.browsers) and self.open_pages == 0


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "output"


@pytest.fixture
def make_launcher():
    return FakeLauncher


@pytest.fixture
def make_site():
    return FakeSite
