"""
Phase Tasks
===========
Executors for the four pipeline phases. Each implements ``PhaseTask``:
``async execute(url, handle, config) -> TaskResult``; the PhaseRunner does
the scheduling, retries and accounting.

    InitialDiscoveryTask  home page links -> paths.json seed
    DeepenTask            links from the deepest known pages -> depth + 1
    MetadataTask          title, meta description, body classes, component hints
    ExtractTask           raw computed-style samples via a StyleExtractor

The document builders below (``initial_paths_document``, ``merge_deepened``,
``organize_metadata``) turn a phase's results into its JSON artifact.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from playwright.async_api import TimeoutError as PlaywrightTimeout

from .artifacts import ArtifactStore
from .browser_pool import BrowserHandle
from .errors import ErrorHandler
from .models import Phase, TaskResult
from .static_fetch import fetch_page_async
from .utils import URLNormalizer

logger = logging.getLogger(__name__)

_normalizer = URLNormalizer()
_errors = ErrorHandler()

DEFAULT_EXTRACTORS = ("typography", "colors", "spacing", "borders", "animations")

# Batch-extract all hrefs in one JS call
LINKS_JS = """
() => {
    const seen = new Set();
    const result = [];
    document.querySelectorAll('a[href]').forEach(el => {
        const href = el.getAttribute('href');
        if (href && !seen.has(href)) {
            seen.add(href);
            result.push(href);
        }
    });
    return result;
}
"""

METADATA_JS = """
() => {
    const meta = document.querySelector('meta[name="description"]');
    const hints = {
        header: 'header, [role="banner"]',
        nav: 'nav, [role="navigation"]',
        footer: 'footer, [role="contentinfo"]',
        form: 'form',
        button: 'button, .btn, .button',
        card: '.card, [class*="card"]',
        hero: '.hero, [class*="hero"]',
        table: 'table',
        carousel: '.carousel, .slider, [class*="carousel"]',
    };
    const components = [];
    for (const [type, sel] of Object.entries(hints)) {
        const el = document.querySelector(sel);
        if (el) {
            components.push({
                type,
                count: document.querySelectorAll(sel).length,
                classes: Array.from(el.classList || []),
            });
        }
    }
    return {
        title: document.title || '',
        description: meta ? (meta.getAttribute('content') || '') : '',
        body_classes: Array.from(document.body ? document.body.classList : []),
        components,
    };
}
"""

STYLE_SAMPLE_JS = """
(categories) => {
    const props = {
        typography: ['font-family', 'font-size', 'font-weight', 'line-height', 'letter-spacing'],
        colors: ['color', 'background-color', 'border-color'],
        spacing: ['margin', 'padding', 'gap'],
        borders: ['border-width', 'border-style', 'border-radius'],
        animations: ['transition', 'animation-name', 'animation-duration'],
    };
    const selector = 'body, h1, h2, h3, h4, p, a, button, input, li, nav, header, footer, section';
    const elements = Array.from(document.querySelectorAll(selector)).slice(0, 400);
    const out = {};
    for (const cat of categories) {
        const names = props[cat] || [];
        const samples = {};
        for (const el of elements) {
            const cs = window.getComputedStyle(el);
            for (const name of names) {
                const value = cs.getPropertyValue(name);
                if (!value) continue;
                samples[name] = samples[name] || {};
                samples[name][value] = (samples[name][value] || 0) + 1;
            }
        }
        out[cat] = samples;
    }
    return out;
}
"""

StyleExtractor = Callable[[Any, str, Sequence[str]], Awaitable[Dict[str, Any]]]


async def collect_style_samples(page, url: str, extractors: Sequence[str]) -> Dict[str, Any]:
    """Default StyleExtractor: ``{category: {property: {value: count}}}``, no interpretation."""
    return await page.evaluate(STYLE_SAMPLE_JS, list(extractors))


def classify_links(hrefs: Iterable[str], page_url: str, base_url: str) -> Tuple[List[str], List[str], List[str]]:
    """Split raw hrefs into (internal pages, internal file URLs, external links)."""
    internal: List[str] = []
    files: List[str] = []
    external: List[str] = []
    for href in hrefs:
        absolute = _normalizer.normalize(href, page_url)
        if absolute is None:
            continue
        is_internal = _normalizer.is_internal(absolute, base_url)
        if is_internal and _normalizer.is_file(absolute):
            bucket = files
        elif is_internal:
            bucket = internal
        else:
            bucket = external
        if absolute not in bucket:
            bucket.append(absolute)
    return internal, files, external


# ---------------------------------------------------------------------------
# Task interface
# ---------------------------------------------------------------------------

class PhaseTask(ABC):
    """Executes one URL of a phase on a leased browser page."""

    phase: Phase

    def __init__(self, navigation_timeout_ms: int = 45000):
        self.navigation_timeout_ms = navigation_timeout_ms

    @abstractmethod
    async def execute(self, url: str, handle: BrowserHandle, config: Optional[dict] = None) -> TaskResult:
        ...

    async def _navigate(self, page, url: str) -> None:
        response = await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        status = getattr(response, "status", None)
        if status is not None and status >= 400:
            raise _errors.from_status(status, url=url)


class _LinkDiscoveryTask(PhaseTask):
    """Shared by Initial and Deepen: browser first, static fetch on navigation timeout."""

    def __init__(self, navigation_timeout_ms: int = 45000, enable_static_fallback: bool = True,
                 user_agent: Optional[str] = None):
        super().__init__(navigation_timeout_ms)
        self.enable_static_fallback = enable_static_fallback
        self.user_agent = user_agent

    async def execute(self, url: str, handle: BrowserHandle, config: Optional[dict] = None) -> TaskResult:
        base_url = (config or {}).get("url") or url
        page = handle.page
        via = "browser"
        try:
            await self._navigate(page, url)
            hrefs = await page.evaluate(LINKS_JS)
            page_url = getattr(page, "url", None) or url
        except PlaywrightTimeout:
            if not self.enable_static_fallback:
                raise
            logger.info(f"[{self.phase.value.upper()}] navigation timed out, static fallback for {url[:60]}")
            static = await fetch_page_async(url, self.user_agent, self.navigation_timeout_ms / 1000.0)
            hrefs, page_url, via = static.hrefs, static.url, "static"

        internal, files, external = classify_links(hrefs or [], page_url, base_url)
        return TaskResult.ok({
            "url": url,
            "links": internal,
            "skipped_file_urls": files,
            "external_links": external,
            "via": via,
        })


class InitialDiscoveryTask(_LinkDiscoveryTask):
    phase = Phase.INITIAL


class DeepenTask(_LinkDiscoveryTask):
    phase = Phase.DEEPEN


class MetadataTask(PhaseTask):
    phase = Phase.METADATA

    async def execute(self, url: str, handle: BrowserHandle, config: Optional[dict] = None) -> TaskResult:
        page = handle.page
        await self._navigate(page, url)
        data = await page.evaluate(METADATA_JS) or {}
        return TaskResult.ok({
            "url": url,
            "title": data.get("title", ""),
            "description": data.get("description", ""),
            "body_classes": list(data.get("body_classes") or []),
            "components": list(data.get("components") or []),
        })


class ExtractTask(PhaseTask):
    """Runs the StyleExtractor and writes ``extract/<slug>.json``."""

    phase = Phase.EXTRACT

    def __init__(self, store: ArtifactStore, navigation_timeout_ms: int = 45000,
                 extractor: Optional[StyleExtractor] = None):
        super().__init__(navigation_timeout_ms)
        self.store = store
        self.extractor = extractor or collect_style_samples

    async def execute(self, url: str, handle: BrowserHandle, config: Optional[dict] = None) -> TaskResult:
        extractors = list((config or {}).get("extractors") or DEFAULT_EXTRACTORS)
        page = handle.page
        await self._navigate(page, url)
        samples = await self.extractor(page, url, extractors)
        ref = await self.store.save_extract(url, {
            "url": url,
            "extracted_at": _now(),
            "extractors": extractors,
            "data": samples,
        })
        return TaskResult.ok({"url": url, "file": ref, "extractors": extractors})


# ---------------------------------------------------------------------------
# Artifact builders
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def initial_paths_document(base_url: str, result: Optional[dict], problem_paths: Sequence[dict] = ()) -> dict:
    """paths.json after the Initial phase: the home page at depth 0, its links at depth 1."""
    all_paths = [{"url": base_url, "depth": 0, "source": "initial"}]
    seen = {base_url}
    result = result or {}
    for link in result.get("links", []):
        if link not in seen:
            seen.add(link)
            all_paths.append({"url": link, "depth": 1, "source": "initial"})
    return {
        "base_url": base_url,
        "scan_type": "initial",
        "scan_time": _now(),
        "total_paths": len(all_paths),
        "all_paths": all_paths,
        "problem_paths": list(problem_paths),
        "skipped_file_urls": sorted(set(result.get("skipped_file_urls", []))),
        "external_links": sorted(set(result.get("external_links", []))),
    }


def deepest_paths(doc: dict) -> List[str]:
    """URLs at the current maximum depth; the Deepen phase's input."""
    paths = doc.get("all_paths") or []
    if not paths:
        return []
    max_depth = max(int(p.get("depth", 0)) for p in paths)
    return [p["url"] for p in paths if int(p.get("depth", 0)) == max_depth]


def path_urls(doc: dict) -> List[str]:
    return [p["url"] for p in doc.get("all_paths") or []]


def merge_deepened(doc: dict, results: Iterable[dict], failures: Iterable[dict] = (),
                   max_pages: Optional[int] = None) -> Tuple[dict, List[str]]:
    """
    Fold Deepen results into a paths document.

    Returns the new document and the URLs it added (depth = previous max + 1,
    source ``deepen``). ``max_pages`` caps the total number of paths.
    """
    all_paths = [dict(p) for p in doc.get("all_paths") or []]
    seen = {p["url"] for p in all_paths}
    next_depth = max((int(p.get("depth", 0)) for p in all_paths), default=0) + 1
    files = set(doc.get("skipped_file_urls") or [])
    external = set(doc.get("external_links") or [])
    added: List[str] = []

    for result in results:
        if not result:
            continue
        files.update(result.get("skipped_file_urls", []))
        external.update(result.get("external_links", []))
        for link in result.get("links", []):
            if link in seen:
                continue
            if max_pages is not None and len(all_paths) >= max_pages:
                break
            seen.add(link)
            added.append(link)
            all_paths.append({"url": link, "depth": next_depth, "source": "deepen"})

    problems = list(doc.get("problem_paths") or []) + list(failures)
    merged = dict(doc)
    merged.update({
        "scan_type": "deepen",
        "scan_time": _now(),
        "total_paths": len(all_paths),
        "all_paths": all_paths,
        "problem_paths": problems,
        "skipped_file_urls": sorted(files),
        "external_links": sorted(external),
    })
    return merged, added


def organize_metadata(base_url: str, results: Iterable[dict], failures: Iterable[dict] = ()) -> dict:
    """
    metadata.json: per-page metadata, pages grouped by body classes, and the
    ``unique_paths`` the Extract phase visits.

    A page is unique when it is the first of its body-class group or carries
    a component type no other page has.
    """
    pages = sorted((r for r in results if r), key=lambda r: r["url"])
    groups: Dict[str, dict] = {}
    component_counts: Dict[str, int] = {}

    for page in pages:
        classes = sorted(page.get("body_classes") or [])
        key = " ".join(classes)
        group = groups.setdefault(key, {"body_classes": classes, "paths": [], "count": 0})
        group["paths"].append(page["url"])
        group["count"] += 1
        for ctype in {c.get("type", "unknown") for c in page.get("components") or []}:
            component_counts[ctype] = component_counts.get(ctype, 0) + 1

    unique: List[str] = []
    for group in groups.values():
        unique.append(group["paths"][0])
    for page in pages:
        types = {c.get("type", "unknown") for c in page.get("components") or []}
        if any(component_counts.get(t) == 1 for t in types) and page["url"] not in unique:
            unique.append(page["url"])

    return {
        "base_url": base_url,
        "scan_time": _now(),
        "total_pages": len(pages),
        "paths_with_metadata": pages,
        "group_body_class": groups,
        "unique_paths": sorted(unique),
        "problem_paths": list(failures),
    }
