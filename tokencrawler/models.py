"""
Data Model
==========
Plain dataclasses shared by the runner, cache, monitor and orchestrator.

Lifecycle:
- ``Task``          created when a phase starts, mutated only by PhaseRunner
- ``PhaseOutcome``  produced once per phase run, then treated as read-only
- ``SiteProfile`` / ``ConcurrencyConfig``  computed once per run, frozen
- ``PipelineReport`` terminal artifact handed back to the caller
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Phase(str, Enum):
    INITIAL = "initial"
    DEEPEN = "deepen"
    METADATA = "metadata"
    EXTRACT = "extract"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"     # never dispatched, abort signal fired first


class SiteCategory(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class PipelineState(str, Enum):
    IDLE = "idle"
    CLASSIFYING_SITE = "classifying_site"
    RUNNING_PHASE = "running_phase"
    FALLBACK_TO_SEQUENTIAL = "fallback_to_sequential"
    COMPLETED = "completed"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """One unit of work within a phase (one URL)."""
    id: int
    phase: Phase
    payload: str
    attempt: int = 0
    status: TaskStatus = TaskStatus.PENDING
    last_error: Optional[str] = None

    @property
    def url(self) -> str:
        return self.payload


@dataclass
class TaskResult:
    """Envelope returned by a PhaseTask executor.

    The core only looks at ``success`` and ``error``; ``data`` is opaque.
    """
    success: bool
    data: Any = None
    error: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> "TaskResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: Any) -> "TaskResult":
        return cls(success=False, error=error)


@dataclass
class TaskFailure:
    """Terminal failure of a single task."""
    url: str
    error_type: str
    category: str
    message: str
    attempts: int
    transient: bool = False

    def to_dict(self) -> dict:
        return {
            'url': self.url, 'error_type': self.error_type,
            'category': self.category, 'message': self.message,
            'attempts': self.attempts, 'transient': self.transient,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskFailure":
        return cls(
            url=data.get('url', ''),
            error_type=data.get('error_type', 'Unknown'),
            category=data.get('category', 'application'),
            message=data.get('message', ''),
            attempts=int(data.get('attempts', 1)),
            transient=bool(data.get('transient', False)),
        )


# ---------------------------------------------------------------------------
# Site profile & concurrency
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SiteProfile:
    page_count_estimate: int
    category: SiteCategory
    confidence: str = "high"      # high | low
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            'page_count_estimate': self.page_count_estimate,
            'category': self.category.value,
            'confidence': self.confidence,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class ConcurrencyConfig:
    per_phase_limit: Dict[Phase, int]
    browser_pools: Dict[Phase, int]
    parallel_phases_allowed: bool
    description: str = ""

    def limit_for(self, phase: Phase) -> int:
        return self.per_phase_limit.get(phase, 1)

    def browsers_for(self, phase: Phase) -> int:
        return self.browser_pools.get(phase, 1)

    def to_dict(self) -> dict:
        return {
            'concurrency': {p.value: n for p, n in self.per_phase_limit.items()},
            'browser_pools': {p.value: n for p, n in self.browser_pools.items()},
            'parallel_phases_allowed': self.parallel_phases_allowed,
            'description': self.description,
        }


# ---------------------------------------------------------------------------
# Phase outcome
# ---------------------------------------------------------------------------

@dataclass
class PhaseOutcome:
    """Aggregate of one phase run. Result/failure order is not significant."""
    phase: Phase
    success_count: int = 0
    failure_count: int = 0
    duration_ms: float = 0.0
    results: List[Any] = field(default_factory=list)
    failures: List[TaskFailure] = field(default_factory=list)
    skipped_count: int = 0
    aborted: bool = False
    from_cache: bool = False
    limit: int = 0
    peak_concurrency: int = 0
    attempts: int = 0

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total if self.total else 1.0

    @property
    def failure_rate(self) -> float:
        return self.failure_count / self.total if self.total else 0.0

    @property
    def throughput(self) -> float:
        """Successful tasks per second."""
        if self.duration_ms <= 0:
            return 0.0
        return self.success_count / (self.duration_ms / 1000.0)

    def merge(self, other: "PhaseOutcome") -> "PhaseOutcome":
        """Fold a follow-up pass of the same phase into a new outcome."""
        return PhaseOutcome(
            phase=self.phase,
            success_count=self.success_count + other.success_count,
            failure_count=self.failure_count + other.failure_count,
            duration_ms=self.duration_ms + other.duration_ms,
            results=list(self.results) + list(other.results),
            failures=list(self.failures) + list(other.failures),
            skipped_count=self.skipped_count + other.skipped_count,
            aborted=self.aborted or other.aborted,
            from_cache=self.from_cache and other.from_cache,
            limit=max(self.limit, other.limit),
            peak_concurrency=max(self.peak_concurrency, other.peak_concurrency),
            attempts=self.attempts + other.attempts,
        )

    def to_dict(self, include_results: bool = True) -> dict:
        data = {
            'phase': self.phase.value,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'skipped_count': self.skipped_count,
            'duration_ms': round(self.duration_ms, 1),
            'success_rate': round(self.success_rate, 4),
            'throughput': round(self.throughput, 3),
            'aborted': self.aborted,
            'from_cache': self.from_cache,
            'limit': self.limit,
            'peak_concurrency': self.peak_concurrency,
            'attempts': self.attempts,
            'failures': [f.to_dict() for f in self.failures],
        }
        if include_results:
            data['results'] = list(self.results)
        return data

    @classmethod
    def from_dict(cls, data: dict, *, from_cache: bool = False) -> "PhaseOutcome":
        return cls(
            phase=Phase(data['phase']),
            success_count=int(data.get('success_count', 0)),
            failure_count=int(data.get('failure_count', 0)),
            duration_ms=float(data.get('duration_ms', 0.0)),
            results=list(data.get('results', [])),
            failures=[TaskFailure.from_dict(f) for f in data.get('failures', [])],
            skipped_count=int(data.get('skipped_count', 0)),
            aborted=bool(data.get('aborted', False)),
            from_cache=from_cache,
            limit=int(data.get('limit', 0)),
            peak_concurrency=int(data.get('peak_concurrency', 0)),
            attempts=int(data.get('attempts', 0)),
        )


# ---------------------------------------------------------------------------
# Cache record
# ---------------------------------------------------------------------------

@dataclass
class CacheRecord:
    phase: Phase
    config_hash: str
    input_hash: str
    fingerprint: str
    completed_at: str
    output_ref: str
    outcome: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'config_hash': self.config_hash,
            'input_hash': self.input_hash,
            'fingerprint': self.fingerprint,
            'completed_at': self.completed_at,
            'output_ref': self.output_ref,
            'outcome': self.outcome,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheRecord":
        return cls(
            phase=Phase(data['phase']),
            config_hash=data.get('config_hash', ''),
            input_hash=data.get('input_hash', ''),
            fingerprint=data.get('fingerprint', ''),
            completed_at=data.get('completed_at', ''),
            output_ref=data.get('output_ref', ''),
            outcome=data.get('outcome') or {},
        )


# ---------------------------------------------------------------------------
# Pipeline report
# ---------------------------------------------------------------------------

@dataclass
class PipelineReport:
    url: str
    mode: str
    state: PipelineState = PipelineState.IDLE
    site_profile: Optional[SiteProfile] = None
    concurrency: Optional[ConcurrencyConfig] = None
    outcomes: Dict[Phase, PhaseOutcome] = field(default_factory=dict)
    degraded: bool = False
    degraded_reasons: List[str] = field(default_factory=list)
    fallbacks: List[str] = field(default_factory=list)
    parallel_used: bool = False
    duration_ms: float = 0.0
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.state == PipelineState.COMPLETED

    def mark_degraded(self, reason: str) -> None:
        self.degraded = True
        if reason not in self.degraded_reasons:
            self.degraded_reasons.append(reason)

    def to_dict(self) -> dict:
        return {
            'url': self.url,
            'mode': self.mode,
            'state': self.state.value,
            'success': self.success,
            'degraded': self.degraded,
            'degraded_reasons': list(self.degraded_reasons),
            'fallbacks': list(self.fallbacks),
            'parallel_used': self.parallel_used,
            'duration_ms': round(self.duration_ms, 1),
            'site_profile': self.site_profile.to_dict() if self.site_profile else None,
            'concurrency': self.concurrency.to_dict() if self.concurrency else None,
            'phases': {
                phase.value: outcome.to_dict(include_results=False)
                for phase, outcome in self.outcomes.items()
            },
            'metrics': self.metrics,
            'error': self.error,
        }
