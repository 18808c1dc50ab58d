"""
Concurrency Policy
==================
Per-phase concurrency limits and browser-pool sizes by site category.

    Category | Deepen | Metadata | Extract | Parallel | Browsers (D/M/E)
    ---------+--------+----------+---------+----------+-----------------
    Small    |   3    |    2     |    2    |    no    |  1 / 1 / 1
    Medium   |   6    |    4     |    3    |   yes    |  2 / 2 / 1
    Large    |  12    |    8     |    6    |   yes    |  4 / 4 / 2

Limits never decrease from Small to Large. Caller overrides win over the
table but are clamped to ``SAFETY_CEILING``.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Union

from .errors import ConfigurationError
from .models import ConcurrencyConfig, Phase, SiteCategory

logger = logging.getLogger(__name__)

SAFETY_CEILING = 20
MAX_BROWSERS = 8

_TABLE = {
    SiteCategory.SMALL: {
        "concurrency": {Phase.DEEPEN: 3, Phase.METADATA: 2, Phase.EXTRACT: 2},
        "browser_pools": {Phase.DEEPEN: 1, Phase.METADATA: 1, Phase.EXTRACT: 1},
        "parallel": False,
        "description": "Sequential processing for optimal resource usage",
    },
    SiteCategory.MEDIUM: {
        "concurrency": {Phase.DEEPEN: 6, Phase.METADATA: 4, Phase.EXTRACT: 3},
        "browser_pools": {Phase.DEEPEN: 2, Phase.METADATA: 2, Phase.EXTRACT: 1},
        "parallel": True,
        "description": "Moderate concurrency with parallel phases",
    },
    SiteCategory.LARGE: {
        "concurrency": {Phase.DEEPEN: 12, Phase.METADATA: 8, Phase.EXTRACT: 6},
        "browser_pools": {Phase.DEEPEN: 4, Phase.METADATA: 4, Phase.EXTRACT: 2},
        "parallel": True,
        "description": "Maximum optimization for large-scale crawling",
    },
}

Overrides = Optional[Mapping[Union[Phase, str], int]]


class ConcurrencyPolicy:
    """Lookup table keyed by ``SiteCategory``."""

    def __init__(self, ceiling: int = SAFETY_CEILING):
        self.ceiling = ceiling

    def for_category(self, category: SiteCategory, overrides: Overrides = None) -> ConcurrencyConfig:
        row = _TABLE[category]
        limits: Dict[Phase, int] = {Phase.INITIAL: 1, **row["concurrency"]}
        pools: Dict[Phase, int] = {Phase.INITIAL: 1, **row["browser_pools"]}

        for phase, value in self.normalize_overrides(overrides).items():
            bounded = min(value, self.ceiling)
            if bounded != value:
                logger.warning(
                    f"[CONCURRENCY] {phase.value} override {value} exceeds "
                    f"safety ceiling, clamped to {bounded}"
                )
            limits[phase] = bounded
            pools[phase] = min(pools.get(phase, 1), bounded)

        config = ConcurrencyConfig(
            per_phase_limit=limits,
            browser_pools=pools,
            parallel_phases_allowed=row["parallel"],
            description=row["description"],
        )
        self.validate(config)
        return config

    def sequential_fallback(self, overrides: Overrides = None) -> ConcurrencyConfig:
        """Small-category limits, used when optimized mode degrades."""
        base = self.for_category(SiteCategory.SMALL)
        limits = dict(base.per_phase_limit)
        # Overrides may only lower the conservative limits here
        for phase, value in self.normalize_overrides(overrides).items():
            limits[phase] = min(limits.get(phase, 1), value)
        return ConcurrencyConfig(
            per_phase_limit=limits,
            browser_pools={phase: 1 for phase in limits},
            parallel_phases_allowed=False,
            description="Sequential fallback with reduced concurrency",
        )

    @staticmethod
    def normalize_overrides(overrides: Overrides) -> Dict[Phase, int]:
        """Coerce ``{"deepen": 10}`` style overrides; reject nonsense values."""
        result: Dict[Phase, int] = {}
        for key, value in (overrides or {}).items():
            try:
                phase = key if isinstance(key, Phase) else Phase(str(key).lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unknown phase in concurrency override: {key!r}",
                    context={"field": "concurrency_overrides"},
                ) from None
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(
                    f"Invalid concurrency for {phase.value}: {value!r} (must be a positive integer)",
                    context={"field": f"concurrency.{phase.value}"},
                )
            result[phase] = value
        return result

    def validate(self, config: ConcurrencyConfig) -> bool:
        errors = []
        for phase, value in config.per_phase_limit.items():
            if value < 1 or value > self.ceiling:
                errors.append(f"Invalid concurrency for {phase.value}: {value} (must be 1-{self.ceiling})")
        for phase, value in config.browser_pools.items():
            if value < 1 or value > MAX_BROWSERS:
                errors.append(f"Invalid browser pool size for {phase.value}: {value} (must be 1-{MAX_BROWSERS})")
        if errors:
            raise ConfigurationError(f"Configuration validation failed: {', '.join(errors)}")
        return True
