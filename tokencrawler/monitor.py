"""
Performance Monitor
====================
Run-wide metrics for the phase pipeline.

Tracks:
- Tasks/sec (rolling 30s window + overall)
- Per-phase throughput and success rate
- Retry count and failure rate
- Worker utilization and peak concurrency
- P95 task time

The report carries a quality gate: an overall success rate below
``min_success_rate`` (default 95%) marks the run as degraded. This is a
soft signal only; the run still completes.

Async-safe: all methods use asyncio.Lock for safe concurrent access.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from .artifacts import write_json_atomic
from .models import Phase, PhaseOutcome

logger = logging.getLogger(__name__)

# Rolling window for tasks/sec calculation
_ROLLING_WINDOW_SEC = 30.0

DEFAULT_MIN_SUCCESS_RATE = 0.95


@dataclass
class TaskTiming:
    """Timing for a single task attempt."""
    url: str = ""
    phase: str = ""
    duration_ms: float = 0.0
    attempt: int = 0
    status: str = "ok"   # ok | failed | retried | timeout


@dataclass
class RunMetrics:
    """Snapshot of all run metrics at a point in time."""
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    tasks_retried: int = 0

    tasks_per_sec_rolling: float = 0.0
    tasks_per_sec_overall: float = 0.0

    active_workers: int = 0
    peak_workers: int = 0

    avg_task_ms: float = 0.0
    p95_task_ms: float = 0.0

    phases_completed: int = 0
    elapsed_sec: float = 0.0
    stop_reason: str = ""


class PerformanceMonitor:
    """
    Async-safe performance monitor for a pipeline run.

    Usage::

        monitor = PerformanceMonitor()
        await monitor.start()

        # In each worker:
        await monitor.record_task(TaskTiming(url=url, phase="metadata", duration_ms=412))

        # After each phase:
        await monitor.record_phase(outcome)

        await monitor.stop()
        report = await monitor.report()
    """

    def __init__(self, min_success_rate: float = DEFAULT_MIN_SUCCESS_RATE, report_interval: float = 10.0):
        self._lock = asyncio.Lock()
        self._start_time: float = 0.0
        self._end_time: float = 0.0
        self.min_success_rate = min_success_rate
        self.report_interval = report_interval

        self._succeeded = 0
        self._failed = 0
        self._retried = 0
        self._active_workers = 0
        self._peak_workers = 0

        self._recent_timestamps: deque = deque()
        # Keep last 1000 for percentile calc
        self._timings: deque = deque(maxlen=1000)

        self._phases: Dict[Phase, PhaseOutcome] = {}

        self._reporter_task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_reason = ""

    async def start(self) -> None:
        """Start the monitor and periodic reporter."""
        self._start_time = time.monotonic()
        self._end_time = 0.0
        self._running = True
        if self.report_interval > 0:
            self._reporter_task = asyncio.create_task(self._reporter_loop())

    async def stop(self, reason: str = "completed") -> None:
        self._running = False
        self._stop_reason = reason
        self._end_time = time.monotonic()
        if self._reporter_task:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_task(self, timing: TaskTiming) -> None:
        now = time.monotonic()
        async with self._lock:
            if timing.status == "ok":
                self._succeeded += 1
                self._recent_timestamps.append(now)
            elif timing.status in ("failed", "timeout"):
                self._failed += 1
            self._timings.append(timing)

            cutoff = now - _ROLLING_WINDOW_SEC
            while self._recent_timestamps and self._recent_timestamps[0] < cutoff:
                self._recent_timestamps.popleft()

    async def record_retry(self) -> None:
        async with self._lock:
            self._retried += 1

    async def worker_started(self) -> None:
        async with self._lock:
            self._active_workers += 1
            self._peak_workers = max(self._peak_workers, self._active_workers)

    async def worker_finished(self) -> None:
        async with self._lock:
            self._active_workers = max(0, self._active_workers - 1)

    async def record_phase(self, outcome: PhaseOutcome) -> None:
        """Store a phase outcome; a second outcome for the same phase replaces the first."""
        async with self._lock:
            self._phases[outcome.phase] = outcome
        logger.info(
            f"[MONITOR] {outcome.phase.label}: {outcome.success_count} ok, "
            f"{outcome.failure_count} failed"
            + (" (cached)" if outcome.from_cache else f" in {outcome.duration_ms / 1000:.1f}s")
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def snapshot(self) -> RunMetrics:
        """Take a consistent snapshot of all metrics."""
        now = time.monotonic()
        async with self._lock:
            end = self._end_time or now
            elapsed = end - self._start_time if self._start_time else 0.0

            cutoff = now - _ROLLING_WINDOW_SEC
            while self._recent_timestamps and self._recent_timestamps[0] < cutoff:
                self._recent_timestamps.popleft()
            rolling_count = len(self._recent_timestamps)
            rolling_tps = rolling_count / _ROLLING_WINDOW_SEC if rolling_count else 0.0
            overall_tps = self._succeeded / elapsed if elapsed > 0 else 0.0

            durations = [t.duration_ms for t in self._timings if t.duration_ms > 0]
            avg = sum(durations) / len(durations) if durations else 0.0
            p95 = 0.0
            if durations:
                sorted_d = sorted(durations)
                idx = int(len(sorted_d) * 0.95)
                p95 = sorted_d[min(idx, len(sorted_d) - 1)]

            return RunMetrics(
                tasks_succeeded=self._succeeded,
                tasks_failed=self._failed,
                tasks_retried=self._retried,
                tasks_per_sec_rolling=round(rolling_tps, 2),
                tasks_per_sec_overall=round(overall_tps, 2),
                active_workers=self._active_workers,
                peak_workers=self._peak_workers,
                avg_task_ms=round(avg, 1),
                p95_task_ms=round(p95, 1),
                phases_completed=len(self._phases),
                elapsed_sec=round(elapsed, 2),
                stop_reason=self._stop_reason,
            )

    async def report(self) -> dict:
        """
        Build the performance report.

        Overall success rate counts tasks across every recorded phase;
        a run with no tasks at all counts as fully successful.
        """
        metrics = await self.snapshot()
        async with self._lock:
            phases = dict(self._phases)

        succeeded = sum(o.success_count for o in phases.values())
        failed = sum(o.failure_count for o in phases.values())
        total = succeeded + failed
        overall = succeeded / total if total else 1.0
        passed = overall >= self.min_success_rate

        return {
            'phases': {
                phase.value: {
                    'success_count': o.success_count,
                    'failure_count': o.failure_count,
                    'skipped_count': o.skipped_count,
                    'duration_ms': round(o.duration_ms, 1),
                    'throughput': round(o.throughput, 3),
                    'success_rate': round(o.success_rate, 4),
                    'limit': o.limit,
                    'peak_concurrency': o.peak_concurrency,
                    'attempts': o.attempts,
                    'from_cache': o.from_cache,
                }
                for phase, o in phases.items()
            },
            'totals': {
                'tasks': total,
                'succeeded': succeeded,
                'failed': failed,
                'retried': metrics.tasks_retried,
                'success_rate': round(overall, 4),
                'avg_task_ms': metrics.avg_task_ms,
                'p95_task_ms': metrics.p95_task_ms,
                'tasks_per_sec': metrics.tasks_per_sec_overall,
                'peak_workers': metrics.peak_workers,
                'elapsed_sec': metrics.elapsed_sec,
            },
            'quality_gate': {
                'min_success_rate': self.min_success_rate,
                'actual': round(overall, 4),
                'passed': passed,
            },
            'degraded': not passed,
            'stop_reason': metrics.stop_reason,
        }

    async def _reporter_loop(self) -> None:
        """Periodically log metrics."""
        while self._running:
            await asyncio.sleep(self.report_interval)
            if not self._running:
                break
            m = await self.snapshot()
            logger.info(
                f"[MONITOR] "
                f"ok={m.tasks_succeeded} "
                f"fail={m.tasks_failed} "
                f"retry={m.tasks_retried} "
                f"workers={m.active_workers} (peak {m.peak_workers}) "
                f"speed={m.tasks_per_sec_rolling:.1f} t/s (rolling) "
                f"{m.tasks_per_sec_overall:.1f} t/s (overall) "
                f"p95={m.p95_task_ms:.0f}ms "
                f"elapsed={m.elapsed_sec:.0f}s"
            )

    @staticmethod
    def format_summary(report: dict) -> str:
        """Format a human-readable summary string."""
        totals = report.get('totals', {})
        gate = report.get('quality_gate', {})
        lines = [
            "=" * 65,
            "  PIPELINE PERFORMANCE SUMMARY",
            "=" * 65,
        ]
        for name, p in report.get('phases', {}).items():
            suffix = "  (cached)" if p.get('from_cache') else ""
            lines.append(
                f"  {name.capitalize():<10} {p['success_count']:>5} ok {p['failure_count']:>4} failed "
                f"{p['throughput']:>7.2f} t/s  {p['success_rate'] * 100:5.1f}%{suffix}"
            )
        lines += [
            "-" * 65,
            f"  Tasks:               {totals.get('tasks', 0)} "
            f"({totals.get('succeeded', 0)} ok, {totals.get('failed', 0)} failed, "
            f"{totals.get('retried', 0)} retries)",
            f"  Success rate:        {totals.get('success_rate', 1.0) * 100:.1f}% "
            f"(target {gate.get('min_success_rate', DEFAULT_MIN_SUCCESS_RATE) * 100:.0f}%, "
            f"{'PASS' if gate.get('passed', True) else 'DEGRADED'})",
            f"  Avg task time:       {totals.get('avg_task_ms', 0):.0f} ms",
            f"  P95 task time:       {totals.get('p95_task_ms', 0):.0f} ms",
            f"  Peak workers:        {totals.get('peak_workers', 0)}",
            "-" * 65,
            f"  Elapsed time:        {totals.get('elapsed_sec', 0):.1f} s",
            f"  Stop reason:         {report.get('stop_reason', '')}",
            "=" * 65,
        ]
        return "\n".join(lines)

    @staticmethod
    async def write_report(path: Union[str, Path], report: dict) -> Path:
        return await asyncio.to_thread(write_json_atomic, path, report)
