"""
Pipeline Orchestrator
=====================
Runs Initial → Deepen → Metadata → Extract with site-adaptive concurrency.

State machine::

    IDLE → RUNNING_PHASE(initial) → CLASSIFYING_SITE → RUNNING_PHASE(...)
         → COMPLETED
         → FALLBACK_TO_SEQUENTIAL → RUNNING_PHASE(...) → COMPLETED
         → ABORTED

- Initial always runs first; its path count classifies the site once.
- ``optimized`` mode on Medium/Large sites runs Deepen and Metadata
  concurrently (two runners, two pools). Metadata covers the paths known at
  dispatch; one reconciliation pass then covers whatever Deepen added.
- Extract always waits for the Metadata outcome.
- A phase-level failure in ``optimized`` mode re-runs that phase with Small
  limits and a single browser and marks the report degraded. A second
  failure aborts the run.
- Every phase consults the CacheManager first; every pool is drained on
  every exit path.

Usage::

    report = run_pipeline("https://example.com", PipelineOptions(output_dir="out"))
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from .artifacts import EXTRACT_DIR, EXTRACT_INDEX, METADATA_FILE, PATHS_FILE, ArtifactStore
from .browser_pool import BrowserLauncher, BrowserResourcePool, PlaywrightLauncher
from .cache import CacheManager
from .concurrency import ConcurrencyPolicy
from .errors import (
    ConfigurationError,
    CrawlerError,
    ErrorHandler,
    FileSystemError,
    PhaseFailure,
    PipelineAborted,
)
from .models import (
    CacheRecord,
    ConcurrencyConfig,
    Phase,
    PhaseOutcome,
    PipelineReport,
    PipelineState,
    SiteCategory,
)
from .monitor import PerformanceMonitor
from .phase_runner import PhaseRunner
from .phases import (
    DeepenTask,
    ExtractTask,
    InitialDiscoveryTask,
    MetadataTask,
    PhaseTask,
    deepest_paths,
    initial_paths_document,
    merge_deepened,
    organize_metadata,
    path_urls,
)
from .run_config import PipelineOptions
from .site_classifier import SiteClassifier
from .utils import validate_url

_module_logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """
    Drives one pipeline run.

    Args:
        options:  Immutable run options (validated on construction).
        tasks:    Optional per-phase PhaseTask overrides.
        launcher: Browser capability; defaults to headless Chromium via Playwright.
        logger:   Log sink for pipeline-level messages.
        monitor:  PerformanceMonitor to record into (a fresh one by default).
    """

    def __init__(
        self,
        options: Optional[PipelineOptions] = None,
        *,
        tasks: Optional[Dict[Phase, PhaseTask]] = None,
        launcher: Optional[BrowserLauncher] = None,
        logger: Optional[logging.Logger] = None,
        monitor: Optional[PerformanceMonitor] = None,
        classifier: Optional[SiteClassifier] = None,
        policy: Optional[ConcurrencyPolicy] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.options = (options or PipelineOptions()).validate()
        self.log = logger or _module_logger
        self.launcher = launcher or PlaywrightLauncher(
            headless=self.options.headless, user_agent=self.options.user_agent,
        )
        self.store = ArtifactStore(self.options.output_dir)
        self.cache = CacheManager(self.options.output_dir, enabled=not self.options.force)
        self.monitor = monitor or PerformanceMonitor(min_success_rate=self.options.min_success_rate)
        self.classifier = classifier or SiteClassifier()
        self.policy = policy or ConcurrencyPolicy()
        self.error_handler = error_handler or ErrorHandler()
        self.retry_policy = self.options.retry_policy()

        timeout_ms = self.options.timeout_ms
        self.tasks: Dict[Phase, PhaseTask] = {
            Phase.INITIAL: InitialDiscoveryTask(timeout_ms, self.options.enable_static_fallback,
                                                self.options.user_agent),
            Phase.DEEPEN: DeepenTask(timeout_ms, self.options.enable_static_fallback,
                                     self.options.user_agent),
            Phase.METADATA: MetadataTask(timeout_ms),
            Phase.EXTRACT: ExtractTask(self.store, timeout_ms),
        }
        self.tasks.update(tasks or {})

        self.abort_event = asyncio.Event()
        self.state = PipelineState.IDLE
        self.state_history: List[str] = [PipelineState.IDLE.value]
        self.report: Optional[PipelineReport] = None
        self.concurrency: Optional[ConcurrencyConfig] = None

        self._pools: Set[BrowserResourcePool] = set()
        self._paths_doc: Optional[dict] = None
        self._metadata_doc: Optional[dict] = None
        self._outputs_written = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Cooperative abort: pending tasks are skipped, in-flight ones finish."""
        self.log.warning("[PIPELINE] Stop requested")
        self.abort_event.set()

    async def run(self, url: Optional[str] = None) -> PipelineReport:
        """
        Run every phase and return the report.

        Raises:
            ValidationError / ConfigurationError: before any phase runs.
            PipelineAborted: the run failed before producing any output.
        """
        url = validate_url(url or self.options.url)
        await self._begin(url)
        error: Optional[CrawlerError] = None
        try:
            await self._run_all(url)
            self._transition(PipelineState.COMPLETED)
        except asyncio.CancelledError:
            self._transition(PipelineState.ABORTED)
            raise
        except ConfigurationError as e:
            self._transition(PipelineState.ABORTED)
            error = e
        except Exception as e:
            error = self._abort(e)
        finally:
            await self._finish()

        if error is not None:
            if isinstance(error, ConfigurationError):
                raise error
            if not self._outputs_written:
                raise PipelineAborted(
                    f"Pipeline aborted before producing output: {error.message}",
                    report=self.report, cause=error,
                ) from error
        return self.report

    async def run_phase(self, phase: Phase, url: Optional[str] = None) -> PhaseOutcome:
        """
        Run a single phase from the artifacts already on disk (CLI subcommands).

        Raises the phase's error directly; cleanup still happens.
        """
        if phase == Phase.INITIAL:
            url = validate_url(url or self.options.url)
        else:
            self._paths_doc = await self.store.load_paths()
            url = url or self._paths_doc.get("base_url") or self.options.url
            url = validate_url(url)
            self.concurrency = self._concurrency_for(
                self.classifier.classify_paths_file(self.store.paths_file)
            )

        await self._begin(url)
        self.report.concurrency = self.concurrency
        try:
            if phase == Phase.INITIAL:
                outcome = await self._run_initial(url)
            elif phase == Phase.DEEPEN:
                outcome = await self._run_deepen(url)
            elif phase == Phase.METADATA:
                outcome = await self._run_metadata(url)
            else:
                self._metadata_doc = await self.store.load_metadata()
                outcome = await self._run_extract(url)
            self._transition(PipelineState.COMPLETED)
        except asyncio.CancelledError:
            self._transition(PipelineState.ABORTED)
            raise
        except Exception as e:
            self._abort(e)
            raise
        finally:
            await self._finish()
        return outcome

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def _run_all(self, url: str) -> None:
        await self._run_initial(url)
        self._check_abort()

        self._transition(PipelineState.CLASSIFYING_SITE)
        profile = self.classifier.classify(
            len(self._paths_doc.get("all_paths", [])),
            complete=self.report.outcomes[Phase.INITIAL].failure_count == 0,
        )
        self.report.site_profile = profile
        self.concurrency = self._concurrency_for(profile)
        self.report.concurrency = self.concurrency
        self.log.info(f"[PIPELINE] {profile.category.value} site: {self.concurrency.description}")

        if self.concurrency.parallel_phases_allowed and self.options.parallel_allowed:
            await self._run_deepen_and_metadata(url)
        else:
            await self._run_deepen(url)
            self._check_abort()
            await self._run_metadata(url)
        self._check_abort()

        await self._run_extract(url)
        self._check_abort()

    def _concurrency_for(self, profile) -> ConcurrencyConfig:
        overrides = self.options.concurrency_overrides
        if self.options.mode == "sequential":
            return self.policy.for_category(SiteCategory.SMALL, overrides)
        return self.policy.for_category(profile.category, overrides)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_initial(self, url: str) -> PhaseOutcome:
        phase = Phase.INITIAL
        self._transition(PipelineState.RUNNING_PHASE, phase)
        config = {"url": url}
        input_hash = self.cache.hash_inputs(url)

        hit, record = await self.cache.should_skip(phase, config, input_hash)
        if hit:
            self._paths_doc = await self.store.load_paths()
            # Deepen may have extended paths.json since; keep only what Initial found
            initial_only = [p for p in self._paths_doc.get("all_paths", []) if p.get("source") == "initial"]
            self._paths_doc = dict(self._paths_doc, all_paths=initial_only, total_paths=len(initial_only))
            self._outputs_written = True
            return await self._finish_phase(self.cache.outcome_from(record))

        initial_config = self.policy.for_category(SiteCategory.SMALL)
        outcome = await self._execute_with_fallback(phase, [url], config, initial_config)
        doc = initial_paths_document(
            url, outcome.results[0] if outcome.results else None,
            problem_paths=[f.to_dict() for f in outcome.failures],
        )
        await self.store.save_paths(doc)
        self._paths_doc = doc
        self._outputs_written = True
        return await self._finish_phase(outcome, config, input_hash, PATHS_FILE)

    async def _run_deepen(self, url: str,
                          cached: Optional[Tuple[bool, Optional[CacheRecord]]] = None) -> PhaseOutcome:
        phase = Phase.DEEPEN
        self._transition(PipelineState.RUNNING_PHASE, phase)
        config = {"url": url, "depth": self.options.depth, "max_pages": self.options.max_pages}
        input_hash = self.cache.hash_inputs(self._initial_urls())

        hit, record = cached if cached is not None else await self.cache.should_skip(phase, config, input_hash)
        if hit:
            self._paths_doc = await self.store.load_paths()
            self._outputs_written = True
            return await self._finish_phase(self.cache.outcome_from(record))

        doc = self._paths_doc
        outcome = PhaseOutcome(phase=phase, limit=self.concurrency.limit_for(phase))
        while (self._max_depth(doc) < self.options.depth
               and len(doc.get("all_paths", [])) < self.options.max_pages
               and not self.abort_event.is_set()):
            frontier = deepest_paths(doc)
            if not frontier:
                break
            round_outcome = await self._execute_with_fallback(phase, frontier, config, self.concurrency)
            doc, added = merge_deepened(
                doc, round_outcome.results,
                failures=[f.to_dict() for f in round_outcome.failures],
                max_pages=self.options.max_pages,
            )
            outcome = outcome.merge(round_outcome)
            self.log.info(f"[PIPELINE] Deepen round at depth {self._max_depth(doc)}: +{len(added)} paths")
            if not added:
                break

        await self.store.save_paths(doc)
        self._paths_doc = doc
        self._outputs_written = True
        return await self._finish_phase(outcome, config, input_hash, PATHS_FILE)

    async def _run_metadata(self, url: str) -> PhaseOutcome:
        phase = Phase.METADATA
        self._transition(PipelineState.RUNNING_PHASE, phase)
        urls = path_urls(self._paths_doc)
        config = {"url": url}
        input_hash = self.cache.hash_inputs(urls)

        hit, record = await self.cache.should_skip(phase, config, input_hash)
        if hit:
            self._metadata_doc = await self.store.load_metadata()
            self._outputs_written = True
            return await self._finish_phase(self.cache.outcome_from(record))

        outcome = await self._execute_with_fallback(phase, urls, config, self.concurrency)
        return await self._save_metadata(url, outcome, config, input_hash)

    async def _run_deepen_and_metadata(self, url: str) -> None:
        """Deepen ‖ Metadata, then one Metadata pass over the paths Deepen added."""
        deepen_config = {"url": url, "depth": self.options.depth, "max_pages": self.options.max_pages}
        deepen_cached = await self.cache.should_skip(
            Phase.DEEPEN, deepen_config, self.cache.hash_inputs(self._initial_urls()),
        )
        if deepen_cached[0]:
            # Path set is already final: nothing to overlap
            await self._run_deepen(url, cached=deepen_cached)
            self._check_abort()
            await self._run_metadata(url)
            return

        self.report.parallel_used = True
        dispatched = path_urls(self._paths_doc)
        config = {"url": url}
        self.log.info(f"[PIPELINE] Deepen ‖ Metadata ({len(dispatched)} paths known at dispatch)")

        deepen_result, metadata_result = await asyncio.gather(
            self._run_deepen(url, cached=deepen_cached),
            self._execute_with_fallback(Phase.METADATA, dispatched, config, self.concurrency),
            return_exceptions=True,
        )
        for result in (deepen_result, metadata_result):
            if isinstance(result, asyncio.CancelledError):
                raise result
        if isinstance(metadata_result, BaseException):
            if isinstance(metadata_result, PhaseFailure) and metadata_result.outcome is not None:
                self.report.outcomes[Phase.METADATA] = metadata_result.outcome
            raise metadata_result
        if isinstance(deepen_result, BaseException):
            self.report.outcomes[Phase.METADATA] = metadata_result
            raise deepen_result

        self._transition(PipelineState.RUNNING_PHASE, Phase.METADATA)
        outcome: PhaseOutcome = metadata_result
        known = set(dispatched)
        added = [u for u in path_urls(self._paths_doc) if u not in known]
        if added and not self.abort_event.is_set():
            self.log.info(f"[PIPELINE] Reconciling metadata for {len(added)} paths found by Deepen")
            extra = await self._execute_with_fallback(Phase.METADATA, added, config, self.concurrency)
            outcome = outcome.merge(extra)

        input_hash = self.cache.hash_inputs(path_urls(self._paths_doc))
        await self._save_metadata(url, outcome, config, input_hash)

    async def _save_metadata(self, url: str, outcome: PhaseOutcome, config: dict, input_hash: str) -> PhaseOutcome:
        doc = organize_metadata(url, outcome.results, [f.to_dict() for f in outcome.failures])
        await self.store.save_metadata(doc)
        self._metadata_doc = doc
        self._outputs_written = True
        self.log.info(
            f"[PIPELINE] Metadata: {doc['total_pages']} pages, "
            f"{len(doc['group_body_class'])} body-class groups, {len(doc['unique_paths'])} unique paths"
        )
        return await self._finish_phase(outcome, config, input_hash, METADATA_FILE)

    async def _run_extract(self, url: str) -> PhaseOutcome:
        phase = Phase.EXTRACT
        self._transition(PipelineState.RUNNING_PHASE, phase)
        unique = list(self._metadata_doc.get("unique_paths") or [])
        config = {"url": url, "extractors": list(self.options.extractors)}
        input_hash = self.cache.hash_inputs(unique)

        hit, record = await self.cache.should_skip(phase, config, input_hash)
        if hit:
            hit = await self._extract_files_intact()
        if hit:
            self._outputs_written = True
            return await self._finish_phase(self.cache.outcome_from(record))

        outcome = await self._execute_with_fallback(phase, unique, config, self.concurrency)
        await self.store.save_extract_index(sorted(outcome.results, key=lambda r: r["url"]))
        self._outputs_written = True
        return await self._finish_phase(outcome, config, input_hash, f"{EXTRACT_DIR}/{EXTRACT_INDEX}")

    async def _extract_files_intact(self) -> bool:
        try:
            missing = await self.store.missing_extract_files()
        except FileSystemError as e:
            self.log.info(f"[CACHE] Extract: index unreadable ({e.message}), re-running")
            return False
        if missing:
            self.log.info(f"[CACHE] Extract: {len(missing)} page files missing, re-running")
            return False
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, phase: Phase, urls: List[str], config: dict,
                       concurrency: ConcurrencyConfig) -> PhaseOutcome:
        pool = BrowserResourcePool.for_phase(self.launcher, concurrency, phase)
        self._pools.add(pool)
        runner = PhaseRunner(
            pool,
            retry_policy=self.retry_policy,
            error_handler=self.error_handler,
            task_timeout_s=self.options.task_timeout_s,
            failure_threshold=self.options.failure_threshold,
            abort_event=self.abort_event,
            monitor=self.monitor,
        )
        try:
            return await runner.run(phase, urls, concurrency.limit_for(phase), self.tasks[phase].execute, config)
        finally:
            await pool.drain()
            self._pools.discard(pool)

    async def _execute_with_fallback(self, phase: Phase, urls: List[str], config: dict,
                                     concurrency: ConcurrencyConfig) -> PhaseOutcome:
        try:
            return await self._execute(phase, urls, config, concurrency)
        except PhaseFailure as e:
            if self.options.mode != "optimized" or self.abort_event.is_set():
                raise
            self.log.warning(f"[PIPELINE] {phase.label} failed ({e.message}); retrying sequentially")
            self._transition(PipelineState.FALLBACK_TO_SEQUENTIAL, phase)
            self.report.mark_degraded(f"fallback:{phase.value}")
            self.report.fallbacks.append(phase.value)
            fallback = self.policy.sequential_fallback(self.options.concurrency_overrides)
            outcome = await self._execute(phase, urls, config, fallback)
            self._transition(PipelineState.RUNNING_PHASE, phase)
            return outcome

    async def _finish_phase(self, outcome: PhaseOutcome, config: Optional[dict] = None,
                            input_hash: Optional[str] = None, output_ref: Optional[str] = None) -> PhaseOutcome:
        if not outcome.from_cache and not outcome.aborted and config is not None:
            await self.cache.record_completion(outcome.phase, config, input_hash, output_ref, outcome)
        self.report.outcomes[outcome.phase] = outcome
        await self.monitor.record_phase(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    async def _begin(self, url: str) -> None:
        self.report = PipelineReport(url=url, mode=self._mode_label())
        self._started = time.monotonic()
        self.options.log_summary(url)
        await self.monitor.start()

    def _mode_label(self) -> str:
        if self.options.mode == "optimized" and self.options.force_sequential:
            return "optimized (force-sequential)"
        return self.options.mode

    def _transition(self, state: PipelineState, phase: Optional[Phase] = None) -> None:
        self.state = state
        label = state.value if phase is None else f"{state.value}:{phase.value}"
        self.state_history.append(label)
        if self.report is not None:
            self.report.state = state
        self.log.debug(f"[PIPELINE] state → {label}")

    def _check_abort(self) -> None:
        if self.abort_event.is_set():
            raise PipelineAborted("Run stopped before completion", report=self.report)

    def _abort(self, exc: BaseException) -> CrawlerError:
        error = self.error_handler.classify(exc)
        if isinstance(exc, PhaseFailure) and exc.outcome is not None and exc.phase is not None:
            self.report.outcomes.setdefault(exc.phase, exc.outcome)
        self._transition(PipelineState.ABORTED)
        self.report.error = error.to_dict()
        self.log.error(f"[PIPELINE] Aborted: {error.message}")
        if not isinstance(exc, CrawlerError):
            self.log.debug("[PIPELINE] Unexpected error", exc_info=exc)
        return error

    async def _finish(self) -> None:
        for pool in list(self._pools):
            await pool.drain()
        self._pools.clear()

        await self.monitor.stop(self.state.value)
        metrics = await self.monitor.report()
        report = self.report
        report.metrics = metrics
        report.state = self.state
        if metrics.get("degraded"):
            report.mark_degraded("quality_gate")
        report.duration_ms = (time.monotonic() - self._started) * 1000.0

        try:
            await self.monitor.write_report(self.store.report_file, report.to_dict())
        except FileSystemError as e:
            self.log.warning(f"[PIPELINE] Could not write performance report: {e.message}")
        self.log.info("\n" + self.monitor.format_summary(metrics))

    def _initial_urls(self) -> List[str]:
        return [p["url"] for p in self._paths_doc.get("all_paths", []) if p.get("source") == "initial"]

    @staticmethod
    def _max_depth(doc: dict) -> int:
        return max((int(p.get("depth", 0)) for p in doc.get("all_paths", [])), default=0)


# ---------------------------------------------------------------------------
# Module-level entry points
# ---------------------------------------------------------------------------

async def arun_pipeline(url: str, options: Optional[PipelineOptions] = None, **kwargs: Any) -> PipelineReport:
    orchestrator = PipelineOrchestrator(options, **kwargs)
    return await orchestrator.run(url)


def run_pipeline(url: str, options: Optional[PipelineOptions] = None, **kwargs: Any) -> PipelineReport:
    """Synchronous wrapper: ``asyncio.run(arun_pipeline(...))``."""
    return asyncio.run(arun_pipeline(url, options, **kwargs))
