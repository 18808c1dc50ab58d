"""
Site Classifier
===============
Turns the number of URLs found by the Initial phase into a size category.

    Small   <= 15 pages
    Medium  16-50 pages
    Large   >= 51 pages

The profile is computed once per run and never revisited, even when later
phases discover more URLs: concurrency limits stay stable for the whole run.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Union

from .models import SiteCategory, SiteProfile

logger = logging.getLogger(__name__)

SMALL_MAX_PAGES = 15
MEDIUM_MAX_PAGES = 50


class SiteClassifier:
    """Maps a discovered-URL count onto a ``SiteProfile``."""

    def __init__(self, small_max: int = SMALL_MAX_PAGES, medium_max: int = MEDIUM_MAX_PAGES):
        self.small_max = small_max
        self.medium_max = medium_max

    def category_for(self, count: int) -> SiteCategory:
        if count <= self.small_max:
            return SiteCategory.SMALL
        if count <= self.medium_max:
            return SiteCategory.MEDIUM
        return SiteCategory.LARGE

    def classify(self, discovered_url_count: int, complete: bool = True) -> SiteProfile:
        """
        Args:
            discovered_url_count: URLs known after the Initial phase.
            complete:             False when the count comes from partial data.
        """
        count = max(0, int(discovered_url_count))
        category = self.category_for(count)
        profile = SiteProfile(
            page_count_estimate=count,
            category=category,
            confidence="high" if complete else "low",
            reason=f"{count} pages detected" + ("" if complete else " (partial data)"),
        )
        logger.info(
            f"[CLASSIFY] {category.value} site ({count} pages, "
            f"confidence={profile.confidence})"
        )
        return profile

    def classify_paths_file(self, paths_file: Union[str, Path]) -> SiteProfile:
        """Classify from an existing ``paths.json``; conservative on any problem."""
        path = Path(paths_file)
        if not path.exists():
            return SiteProfile(0, SiteCategory.SMALL, "low",
                               "No paths file found, assuming small site")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[CLASSIFY] Could not read {path}: {exc}, assuming small site")
            return SiteProfile(0, SiteCategory.SMALL, "low",
                               "Analysis failed, using conservative settings")
        all_paths = data.get("all_paths") or []
        return self.classify(len(all_paths), complete=bool(data.get("scan_type")))
