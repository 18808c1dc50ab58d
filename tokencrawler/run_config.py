"""
Unified Run Configuration
=========================
Single source of truth for ALL pipeline defaults and runtime limits.

The CLI, environment variables and library callers all build a
``PipelineOptions``; the orchestrator only ever reads it. Options are
immutable: derive a variant with ``with_overrides()``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .concurrency import SAFETY_CEILING, ConcurrencyPolicy
from .errors import ConfigurationError
from .phases import DEFAULT_EXTRACTORS
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

MODES = ("optimized", "sequential")

ENV_PREFIX = "TOKENCRAWLER_"


# ---------------------------------------------------------------------------
# Canonical defaults, the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "mode": "optimized",
    "force_sequential": False,
    "force": False,
    "output_dir": "output",
    "timeout_ms": 45000,             # per task
    "max_retries": 2,
    "retry_base_delay_ms": 1000,
    "depth": 2,                      # deepest link level Deepen reaches
    "max_pages": 500,
    "failure_threshold": 1.0,        # phase fails when this share of tasks failed
    "min_success_rate": 0.95,        # quality gate; below it the run is degraded
    "headless": True,
    "enable_static_fallback": True,
    "user_agent": None,
    "extractors": DEFAULT_EXTRACTORS,
}


@dataclass(frozen=True)
class PipelineOptions:
    """
    Populate via:
      - ``PipelineOptions()``                    → all defaults
      - ``PipelineOptions(mode="sequential")``   → override one value
      - ``PipelineOptions.from_cli_args(ns)``    → from argparse Namespace
      - ``PipelineOptions.from_env()``           → from TOKENCRAWLER_* variables
    """

    url: Optional[str] = None

    # ---- Scheduling ----
    mode: str = _DEFAULTS["mode"]
    force_sequential: bool = _DEFAULTS["force_sequential"]
    concurrency_overrides: Mapping[str, int] = field(default_factory=dict)

    # ---- Cache / output ----
    force: bool = _DEFAULTS["force"]
    output_dir: str = _DEFAULTS["output_dir"]

    # ---- Task limits ----
    timeout_ms: int = _DEFAULTS["timeout_ms"]
    max_retries: int = _DEFAULTS["max_retries"]
    retry_base_delay_ms: int = _DEFAULTS["retry_base_delay_ms"]
    depth: int = _DEFAULTS["depth"]
    max_pages: int = _DEFAULTS["max_pages"]

    # ---- Thresholds ----
    failure_threshold: float = _DEFAULTS["failure_threshold"]
    min_success_rate: float = _DEFAULTS["min_success_rate"]

    # ---- Browser ----
    headless: bool = _DEFAULTS["headless"]
    enable_static_fallback: bool = _DEFAULTS["enable_static_fallback"]
    user_agent: Optional[str] = _DEFAULTS["user_agent"]

    extractors: Tuple[str, ...] = _DEFAULTS["extractors"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_cli_args(cls, args, base: Optional["PipelineOptions"] = None) -> "PipelineOptions":
        """
        Build options from an argparse Namespace (``__main__.py``).

        Only flags that were actually given are applied on top of ``base``
        (built-in defaults when omitted). An explicit ``0`` is kept so that
        ``validate()`` can reject it.
        """
        changes = {}
        for flag, name in (("url", "url"), ("mode", "mode"), ("output_dir", "output_dir"),
                           ("timeout", "timeout_ms"), ("retries", "max_retries"),
                           ("depth", "depth"), ("max_pages", "max_pages")):
            value = getattr(args, flag, None)
            if value is not None:
                changes[name] = value
        if getattr(args, "concurrency", None):
            changes["concurrency_overrides"] = parse_concurrency(args.concurrency)
        if getattr(args, "force", False):
            changes["force"] = True
        if getattr(args, "force_sequential", False):
            changes["force_sequential"] = True
        if getattr(args, "no_static_fallback", False):
            changes["enable_static_fallback"] = False
        if getattr(args, "headed", False):
            changes["headless"] = False
        return (base or cls()).with_overrides(**changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "PipelineOptions":
        """
        Build options from ``TOKENCRAWLER_*`` variables. The CLI loads ``.env``
        with python-dotenv first, so values from it appear here too.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        kwargs = {}
        for name, key, conv in (
            ("URL", "url", str),
            ("MODE", "mode", str),
            ("OUTPUT_DIR", "output_dir", str),
            ("USER_AGENT", "user_agent", str),
            ("TIMEOUT_MS", "timeout_ms", int),
            ("RETRIES", "max_retries", int),
            ("DEPTH", "depth", int),
            ("MAX_PAGES", "max_pages", int),
            ("FAILURE_THRESHOLD", "failure_threshold", float),
            ("MIN_SUCCESS_RATE", "min_success_rate", float),
            ("FORCE", "force", _parse_bool),
            ("FORCE_SEQUENTIAL", "force_sequential", _parse_bool),
            ("HEADLESS", "headless", _parse_bool),
        ):
            raw = get(name)
            if raw is None:
                continue
            try:
                kwargs[key] = conv(raw)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX}{name}: {raw!r}",
                    context={"field": key},
                ) from None

        raw_concurrency = get("CONCURRENCY")
        if raw_concurrency:
            kwargs["concurrency_overrides"] = parse_concurrency(raw_concurrency.split(","))

        kwargs.update(overrides)
        return cls(**kwargs)

    def with_overrides(self, **changes) -> "PipelineOptions":
        return dataclasses.replace(self, **changes)

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------
    @property
    def task_timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def parallel_allowed(self) -> bool:
        return self.mode == "optimized" and not self.force_sequential

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, base_delay_ms=self.retry_base_delay_ms)

    def validate(self) -> "PipelineOptions":
        """Raise ConfigurationError before any phase runs."""
        errors = []
        if self.mode not in MODES:
            errors.append(f"mode must be one of {', '.join(MODES)} (got {self.mode!r})")
        if not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            errors.append(f"timeout must be a positive number of ms (got {self.timeout_ms!r})")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            errors.append(f"retries must be >= 0 (got {self.max_retries!r})")
        if self.retry_base_delay_ms < 0:
            errors.append(f"retry base delay must be >= 0 (got {self.retry_base_delay_ms!r})")
        if not isinstance(self.depth, int) or self.depth < 1:
            errors.append(f"depth must be >= 1 (got {self.depth!r})")
        if not isinstance(self.max_pages, int) or self.max_pages < 1:
            errors.append(f"max_pages must be >= 1 (got {self.max_pages!r})")
        for name in ("failure_threshold", "min_success_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1] (got {value!r})")
        for phase, value in ConcurrencyPolicy.normalize_overrides(self.concurrency_overrides).items():
            if value > SAFETY_CEILING:
                logger.warning(
                    f"[CONFIG] concurrency {phase.value}={value} above ceiling, "
                    f"will be clamped to {SAFETY_CEILING}"
                )
        unknown = [e for e in self.extractors if e not in DEFAULT_EXTRACTORS]
        if unknown:
            errors.append(f"unknown extractors: {', '.join(unknown)}")
        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                context={"field": "options"},
            )
        return self

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, url: str) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("PIPELINE RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  URL:              {url}")
        logger.info(f"  Mode:             {self.mode}"
                    + (" (parallel phases disabled)" if self.force_sequential else ""))
        logger.info(f"  Output Dir:       {self.output_dir}")
        logger.info(f"  Depth:            {self.depth}")
        logger.info(f"  Max Pages:        {self.max_pages}")
        logger.info(f"  Timeout:          {self.timeout_ms}ms per task")
        logger.info(f"  Retries:          {self.max_retries}")
        logger.info(f"  Static Fallback:  {self.enable_static_fallback}")
        logger.info(f"  Cache:            {'bypassed (--force)' if self.force else 'enabled'}")
        if self.concurrency_overrides:
            pairs = ", ".join(f"{k}={v}" for k, v in self.concurrency_overrides.items())
            logger.info(f"  Concurrency:      {pairs}")
        logger.info("=" * 60)


def parse_concurrency(values: Iterable[str]) -> Dict[str, int]:
    """``["deepen=10", "metadata=4"]`` → ``{"deepen": 10, "metadata": 4}``."""
    result: Dict[str, int] = {}
    for raw in values:
        raw = raw.strip()
        if not raw:
            continue
        name, sep, value = raw.partition("=")
        if not sep:
            raise ConfigurationError(
                f"Invalid concurrency override {raw!r} (expected PHASE=N)",
                context={"field": "concurrency"},
            )
        try:
            result[name.strip().lower()] = int(value)
        except ValueError:
            raise ConfigurationError(
                f"Invalid concurrency for {name.strip()}: {value!r} (must be a positive integer)",
                context={"field": f"concurrency.{name.strip()}"},
            ) from None
    ConcurrencyPolicy.normalize_overrides(result)
    return result


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)
