"""
Browser Resource Pool
=====================
Bounds and recycles a small set of browser instances and hands out page
handles under a concurrency ceiling.

Architecture:
- ``pool_size`` browsers, each allowed ``pages_per_browser`` open pages
- allocation picks the least-loaded browser
- when every browser is at capacity, callers wait on a FIFO queue
- ``lease()`` is the scoped form: the handle is released on success,
  error and cancellation alike
- ``drain()`` closes everything and is safe to call more than once

The browser engine is only used through a small capability:
``launcher.launch() -> browser``, ``browser.new_page() -> page``,
``page.close()``, ``browser.close()``. ``PlaywrightLauncher`` provides it
with Chromium.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import re
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol

from playwright.async_api import async_playwright

from .errors import ApplicationError, BrowserLaunchError
from .models import ConcurrencyConfig, Phase

logger = logging.getLogger(__name__)

# Resource types to block for speed
_BLOCKED_RESOURCE_TYPES = frozenset([
    "image", "media", "font", "manifest",
])

# URL patterns for analytics/tracking scripts to block
_BLOCKED_URL_PATTERNS = [
    re.compile(r"google[-_]?analytics", re.IGNORECASE),
    re.compile(r"googletagmanager", re.IGNORECASE),
    re.compile(r"facebook\.net", re.IGNORECASE),
    re.compile(r"doubleclick\.net", re.IGNORECASE),
    re.compile(r"hotjar\.", re.IGNORECASE),
    re.compile(r"segment\.(com|io)", re.IGNORECASE),
    re.compile(r"mixpanel\.", re.IGNORECASE),
]

_LAUNCH_ARGS = [
    '--disable-gpu',
    '--no-sandbox',
    '--disable-dev-shm-usage',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
    '--disable-extensions',
    '--no-first-run',
]


class BrowserLauncher(Protocol):
    async def launch(self) -> Any:
        """Return an object with ``async new_page()`` and ``async close()``."""


# ---------------------------------------------------------------------------
# Playwright capability
# ---------------------------------------------------------------------------

class PlaywrightLauncher:
    """
    Launches headless Chromium browsers through one shared Playwright driver.

    The driver starts with the first browser and stops when the last one
    closes, so a launcher can serve several pools in sequence.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: Optional[str] = None,
        viewport_width: int = 1920,
        viewport_height: int = 1080,
        block_resources: bool = True,
        launch_timeout_ms: int = 90000,
    ):
        self.headless = headless
        self.user_agent = user_agent
        self.viewport = {'width': viewport_width, 'height': viewport_height}
        self.block_resources = block_resources
        self.launch_timeout_ms = launch_timeout_ms
        self._playwright = None
        self._open_browsers = 0
        self._lock = asyncio.Lock()

    async def launch(self) -> "_PlaywrightBrowser":
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            try:
                browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=_LAUNCH_ARGS,
                    timeout=self.launch_timeout_ms,
                )
            except Exception:
                if self._open_browsers == 0:
                    await self._stop_driver()
                raise
            self._open_browsers += 1
        return _PlaywrightBrowser(self, browser)

    async def _browser_closed(self) -> None:
        async with self._lock:
            self._open_browsers = max(0, self._open_browsers - 1)
            if self._open_browsers == 0:
                await self._stop_driver()

    async def _stop_driver(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"[POOL] Playwright stop failed: {e}")
            self._playwright = None

    async def route_handler(self, route) -> None:
        """Block images, fonts, media and analytics scripts."""
        request = route.request
        if request.resource_type in _BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return
        if request.resource_type == "script":
            for pattern in _BLOCKED_URL_PATTERNS:
                if pattern.search(request.url):
                    await route.abort()
                    return
        await route.continue_()


class _PlaywrightBrowser:
    """Adapts a Playwright ``Browser`` to the pool's capability."""

    def __init__(self, launcher: PlaywrightLauncher, browser):
        self._launcher = launcher
        self._browser = browser
        self._closed = False

    async def new_page(self):
        kwargs = {'viewport': self._launcher.viewport}
        if self._launcher.user_agent:
            kwargs['user_agent'] = self._launcher.user_agent
        page = await self._browser.new_page(**kwargs)
        if self._launcher.block_resources:
            await page.route("**/*", self._launcher.route_handler)
        return page

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser.close()
        finally:
            await self._launcher._browser_closed()


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

@dataclass
class BrowserHandle:
    """A page on one pooled browser, owned by exactly one task."""
    id: int
    browser_index: int
    page: Any
    acquired_at: float = field(default_factory=time.monotonic)


@dataclass
class _PooledBrowser:
    index: int
    browser: Any
    active: int = 0


class BrowserResourcePool:
    """
    Usage::

        pool = BrowserResourcePool(PlaywrightLauncher(), pool_size=2, pages_per_browser=3)
        try:
            async with pool.lease() as handle:
                await handle.page.goto(url)
        finally:
            await pool.drain()
    """

    def __init__(self, launcher: BrowserLauncher, pool_size: int = 1, pages_per_browser: int = 1,
                 name: str = "pool"):
        if pool_size < 1 or pages_per_browser < 1:
            raise ValueError("pool_size and pages_per_browser must be >= 1")
        self.launcher = launcher
        self.pool_size = pool_size
        self.pages_per_browser = pages_per_browser
        self.name = name

        self._browsers: List[_PooledBrowser] = []
        self._waiters: Deque[asyncio.Future] = deque()
        self._open: Dict[int, BrowserHandle] = {}
        self._ids = itertools.count(1)
        self._start_lock = asyncio.Lock()
        self._started = False
        self._drained = False

        self.peak_open_handles = 0
        self.total_acquired = 0
        self.launch_failures = 0

    @classmethod
    def for_phase(cls, launcher: BrowserLauncher, config: ConcurrencyConfig, phase: Phase) -> "BrowserResourcePool":
        """Size a pool from ConcurrencyConfig so no single browser carries the whole phase."""
        limit = config.limit_for(phase)
        pool_size = max(1, min(config.browsers_for(phase), limit))
        pages_per_browser = max(1, math.ceil(limit / pool_size))
        return cls(launcher, pool_size=pool_size, pages_per_browser=pages_per_browser,
                   name=f"{phase.value}-pool")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def open_handles(self) -> int:
        return len(self._open)

    @property
    def open_browsers(self) -> int:
        return len(self._browsers)

    @property
    def capacity(self) -> int:
        return len(self._browsers) * self.pages_per_browser

    @property
    def drained(self) -> bool:
        return self._drained

    def stats(self) -> dict:
        return {
            'name': self.name,
            'pool_size': self.pool_size,
            'pages_per_browser': self.pages_per_browser,
            'open_browsers': self.open_browsers,
            'open_handles': self.open_handles,
            'peak_open_handles': self.peak_open_handles,
            'total_acquired': self.total_acquired,
            'waiting': len(self._waiters),
            'launch_failures': self.launch_failures,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the browsers. Raises BrowserLaunchError if none come up."""
        async with self._start_lock:
            if self._started:
                return
            if self._drained:
                raise ApplicationError(f"[{self.name}] cannot start a drained pool")

            results = await asyncio.gather(
                *(self.launcher.launch() for _ in range(self.pool_size)),
                return_exceptions=True,
            )
            first_error: Optional[BaseException] = None
            for result in results:
                if isinstance(result, BaseException):
                    self.launch_failures += 1
                    first_error = first_error or result
                    logger.warning(f"[POOL] {self.name}: browser launch failed: {result}")
                    continue
                self._browsers.append(_PooledBrowser(index=len(self._browsers), browser=result))

            if not self._browsers:
                raise BrowserLaunchError(
                    f"{self.name}: could not launch any browser ({first_error})",
                    cause=first_error,
                )
            self._started = True
            logger.info(
                f"[POOL] {self.name}: {len(self._browsers)}/{self.pool_size} browsers up, "
                f"{self.pages_per_browser} pages each (capacity {self.capacity})"
            )

    async def drain(self) -> None:
        """Close every page and browser. Idempotent."""
        if self._drained:
            return
        self._drained = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(ApplicationError(f"{self.name} drained while waiting"))

        for handle in list(self._open.values()):
            await self._close_page(handle)
        self._open.clear()

        for pooled in self._browsers:
            try:
                await pooled.browser.close()
            except Exception as e:
                logger.debug(f"[POOL] {self.name}: error closing browser {pooled.index}: {e}")
        closed = len(self._browsers)
        self._browsers.clear()
        logger.info(f"[POOL] {self.name}: drained ({closed} browsers closed, peak {self.peak_open_handles} handles)")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> BrowserHandle:
        """Return a fresh page handle; suspends while the pool is saturated."""
        if self._drained:
            raise ApplicationError(f"{self.name} is drained")
        if not self._started:
            await self.start()

        slot = self._least_loaded()
        if slot is not None:
            slot.active += 1
        else:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                slot = await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    # Slot was handed over just as we were cancelled
                    self._free_slot(waiter.result())
                raise

        try:
            page = await slot.browser.new_page()
        except BaseException:
            self._free_slot(slot)
            raise

        handle = BrowserHandle(id=next(self._ids), browser_index=slot.index, page=page)
        self._open[handle.id] = handle
        self.total_acquired += 1
        self.peak_open_handles = max(self.peak_open_handles, len(self._open))
        return handle

    async def release(self, handle: BrowserHandle) -> None:
        """Close the handle's page and return its slot to the pool."""
        if self._open.pop(handle.id, None) is None:
            return
        await self._close_page(handle)
        if self._drained:
            return
        slot = self._slot_for(handle.browser_index)
        if slot is not None:
            self._free_slot(slot)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BrowserHandle]:
        """Scoped acquisition: the handle is always released."""
        handle = await self.acquire()
        try:
            yield handle
        finally:
            await self.release(handle)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _least_loaded(self) -> Optional[_PooledBrowser]:
        candidates = [b for b in self._browsers if b.active < self.pages_per_browser]
        if not candidates:
            return None
        return min(candidates, key=lambda b: (b.active, b.index))

    def _slot_for(self, index: int) -> Optional[_PooledBrowser]:
        for pooled in self._browsers:
            if pooled.index == index:
                return pooled
        return None

    def _free_slot(self, slot: _PooledBrowser) -> None:
        # Hand the slot straight to the oldest live waiter, else mark it idle
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(slot)
                return
        slot.active = max(0, slot.active - 1)

    async def _close_page(self, handle: BrowserHandle) -> None:
        try:
            await handle.page.close()
        except Exception as e:
            # Pages of a crashed browser raise on close; nothing left to free
            logger.debug(f"[POOL] {self.name}: page close failed for handle {handle.id}: {e}")
