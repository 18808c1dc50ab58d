"""
Phase Runner
============
Runs one phase's task list through a bounded worker pool.

Architecture:
- ``min(limit, len(tasks))`` worker coroutines pull Tasks from an asyncio.Queue
- each attempt leases a BrowserHandle, runs the executor under a per-task
  timeout, then releases the handle
- transient failures go back on the queue after the RetryPolicy backoff;
  the backoff runs outside the lease so the handle is free meanwhile
- permanent failures and exhausted retries are recorded, the phase goes on
- the abort event is checked before every dispatch: pending tasks are
  marked SKIPPED, in-flight tasks are allowed to finish

A phase where ``failure_rate >= failure_threshold`` (default: every task
failed) raises ``PhaseFailure`` carrying the partial outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Union

from .browser_pool import BrowserHandle, BrowserResourcePool
from .errors import (
    BrowserLaunchError,
    CrawlerError,
    ErrorAction,
    ErrorHandler,
    NetworkError,
    PhaseFailure,
)
from .models import Phase, PhaseOutcome, Task, TaskFailure, TaskResult, TaskStatus
from .monitor import PerformanceMonitor, TaskTiming
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

Executor = Callable[[str, BrowserHandle, Optional[dict]], Awaitable[TaskResult]]


@dataclass
class _RunState:
    phase: Phase
    outcome: PhaseOutcome
    execute: Executor
    config: Optional[dict]
    queue: asyncio.Queue
    remaining: int
    done: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: int = 0
    retry_timers: Set[asyncio.Task] = field(default_factory=set)
    escalation: Optional[CrawlerError] = None
    fatal: Optional[CrawlerError] = None

    def finish_one(self) -> None:
        self.remaining -= 1
        if self.remaining <= 0:
            self.done.set()


class PhaseRunner:
    """
    Usage::

        runner = PhaseRunner(pool, retry_policy=RetryPolicy(max_retries=2), task_timeout_s=45)
        outcome = await runner.run(Phase.METADATA, urls, limit=4, execute=task.execute)
    """

    def __init__(
        self,
        pool: BrowserResourcePool,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        error_handler: Optional[ErrorHandler] = None,
        task_timeout_s: float = 45.0,
        failure_threshold: float = 1.0,
        abort_event: Optional[asyncio.Event] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.error_handler = error_handler or ErrorHandler()
        self.task_timeout_s = task_timeout_s
        self.failure_threshold = failure_threshold
        self.abort_event = abort_event or asyncio.Event()
        self.monitor = monitor

    async def run(
        self,
        phase: Phase,
        items: Iterable[Union[str, Task]],
        limit: int,
        execute: Executor,
        config: Optional[dict] = None,
    ) -> PhaseOutcome:
        tasks = self._build_tasks(phase, items)
        outcome = PhaseOutcome(phase=phase, limit=limit)
        started = time.monotonic()

        if not tasks:
            logger.info(f"[PHASE] {phase.label}: nothing to do")
            return outcome

        try:
            await self.pool.start()
        except BrowserLaunchError as e:
            e.phase = phase
            e.outcome = outcome
            e.context["phase"] = phase.value
            raise

        queue: asyncio.Queue = asyncio.Queue()
        for task in tasks:
            queue.put_nowait(task)
        state = _RunState(phase=phase, outcome=outcome, execute=execute, config=config,
                          queue=queue, remaining=len(tasks))

        n_workers = max(1, min(limit, len(tasks)))
        logger.info(f"[PHASE] {phase.label}: {len(tasks)} tasks, {n_workers} workers (limit {limit})")

        workers = [asyncio.create_task(self._worker(i, state)) for i in range(n_workers)]
        try:
            await state.done.wait()
        finally:
            for timer in list(state.retry_timers):
                timer.cancel()
            for _ in workers:
                queue.put_nowait(None)
            for w in workers:
                if not w.done() and state.remaining > 0:
                    w.cancel()
            await asyncio.gather(*workers, *state.retry_timers, return_exceptions=True)
            outcome.duration_ms = (time.monotonic() - started) * 1000.0

        outcome.aborted = outcome.skipped_count > 0 or (
            self.abort_event.is_set() and outcome.total < len(tasks)
        )
        logger.info(
            f"[PHASE] {phase.label} done: {outcome.success_count} ok, {outcome.failure_count} failed, "
            f"{outcome.skipped_count} skipped in {outcome.duration_ms / 1000:.1f}s "
            f"(peak {outcome.peak_concurrency}/{limit})"
        )

        if state.fatal is not None:
            raise state.fatal
        if state.escalation is not None:
            raise PhaseFailure(
                f"{phase.label} phase escalated: {state.escalation.message}",
                phase=phase, outcome=outcome, cause=state.escalation,
            )
        if outcome.total and outcome.failure_rate >= self.failure_threshold:
            raise PhaseFailure(
                f"{phase.label} phase failed: {outcome.failure_count}/{outcome.total} tasks failed",
                phase=phase, outcome=outcome,
            )
        return outcome

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int, state: _RunState) -> None:
        """Worker coroutine: pulls tasks from the queue until it sees the sentinel."""
        while True:
            task = await state.queue.get()
            if task is None:
                return
            if self.abort_event.is_set():
                self._abandon(task, state)
                continue
            await self._attempt(task, state)

    async def _attempt(self, task: Task, state: _RunState) -> None:
        task.status = TaskStatus.RUNNING
        state.in_flight += 1
        state.outcome.peak_concurrency = max(state.outcome.peak_concurrency, state.in_flight)
        state.outcome.attempts += 1
        if self.monitor:
            await self.monitor.worker_started()

        started = time.monotonic()
        result: Optional[TaskResult] = None
        error: Optional[CrawlerError] = None
        try:
            async with self.pool.lease() as handle:
                result = await asyncio.wait_for(
                    state.execute(task.url, handle, state.config),
                    timeout=self.task_timeout_s,
                )
            if not isinstance(result, TaskResult):
                result = TaskResult.ok(result)
            if not result.success:
                error = self.error_handler.classify_result_error(result.error, url=task.url)
        except asyncio.TimeoutError:
            error = NetworkError(f"Task timed out after {self.task_timeout_s:g}s", url=task.url)
        except Exception as exc:
            error = self.error_handler.classify(exc, url=task.url)
            if error is not exc:
                error.__cause__ = exc
        finally:
            state.in_flight -= 1
            if self.monitor:
                await self.monitor.worker_finished()

        elapsed_ms = (time.monotonic() - started) * 1000.0

        if error is None:
            task.status = TaskStatus.SUCCEEDED
            state.outcome.success_count += 1
            state.outcome.results.append(result.data)
            await self._timing(task, elapsed_ms, "ok")
            state.finish_one()
            return

        task.last_error = error.message
        action = self.error_handler.decide(error, task.attempt, self.retry_policy)

        if action == ErrorAction.RETRY:
            delay = self.retry_policy.backoff_seconds(task.attempt)
            logger.info(
                f"[RETRY] {task.url[:60]} attempt {task.attempt + 2}/{self.retry_policy.max_attempts} "
                f"in {delay:.1f}s ({error.message})"
            )
            await self._timing(task, elapsed_ms, "retried")
            if self.monitor:
                await self.monitor.record_retry()
            task.attempt += 1
            task.status = TaskStatus.PENDING
            timer = asyncio.create_task(self._requeue_after(task, delay, state))
            state.retry_timers.add(timer)
            timer.add_done_callback(state.retry_timers.discard)
            return

        self._record_failure(task, error, state)
        await self._timing(task, elapsed_ms, "failed")
        if action == ErrorAction.ABORT_PIPELINE and state.fatal is None:
            state.fatal = error
            self.abort_event.set()
        elif action == ErrorAction.ESCALATE_PHASE and state.escalation is None:
            state.escalation = error
        state.finish_one()

    async def _requeue_after(self, task: Task, delay: float, state: _RunState) -> None:
        # Wakes early when the abort signal fires
        try:
            await asyncio.wait_for(self.abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        state.queue.put_nowait(task)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _abandon(self, task: Task, state: _RunState) -> None:
        """Abort fired before dispatch. A task already mid-retry keeps its failure."""
        if task.attempt > 0 and task.last_error:
            state.outcome.failure_count += 1
            state.outcome.failures.append(TaskFailure(
                url=task.url, error_type="Aborted", category="application",
                message=f"aborted during retry: {task.last_error}", attempts=task.attempt,
            ))
            task.status = TaskStatus.FAILED
        else:
            task.status = TaskStatus.SKIPPED
            state.outcome.skipped_count += 1
        state.finish_one()

    def _record_failure(self, task: Task, error: CrawlerError, state: _RunState) -> None:
        task.status = TaskStatus.FAILED
        state.outcome.failure_count += 1
        state.outcome.failures.append(TaskFailure(
            url=task.url,
            error_type=type(error).__name__,
            category=error.category.value,
            message=error.message,
            attempts=task.attempt + 1,
            transient=error.transient,
        ))
        logger.warning(f"[PHASE] {state.phase.label} failed: {task.url[:80]}: {error.message}")

    async def _timing(self, task: Task, elapsed_ms: float, status: str) -> None:
        if self.monitor:
            await self.monitor.record_task(TaskTiming(
                url=task.url, phase=task.phase.value, duration_ms=elapsed_ms,
                attempt=task.attempt, status=status,
            ))

    @staticmethod
    def _build_tasks(phase: Phase, items: Iterable[Union[str, Task]]) -> List[Task]:
        tasks: List[Task] = []
        for i, item in enumerate(items):
            if isinstance(item, Task):
                tasks.append(item)
            else:
                tasks.append(Task(id=i, phase=phase, payload=str(item)))
        return tasks
