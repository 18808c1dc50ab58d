"""
Tests for PhaseRunner: bounded workers, retry, timeout, abort and escalation.
"""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from tokencrawler.browser_pool import BrowserResourcePool
from tokencrawler.errors import (
    BrowserLaunchError,
    ConfigurationError,
    FileSystemError,
    NetworkError,
    PhaseFailure,
    ValidationError,
)
from tokencrawler.models import Phase, TaskResult
from tokencrawler.monitor import PerformanceMonitor
from tokencrawler.phase_runner import PhaseRunner
from tokencrawler.retry import RetryPolicy

URLS = [f"https://example.com/p{i}" for i in range(10)]


def make_runner(launcher, *, limit=3, max_retries=2, timeout=5.0, threshold=1.0,
                abort_event=None, monitor=None):
    pool = BrowserResourcePool(launcher, pool_size=1, pages_per_browser=limit)
    runner = PhaseRunner(
        pool,
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_ms=0),
        task_timeout_s=timeout,
        failure_threshold=threshold,
        abort_event=abort_event,
        monitor=monitor,
    )
    return runner, pool


class TestConcurrencyBound:
    """No more than ``limit`` executors run at once."""

    @pytest.mark.asyncio
    async def test_peak_never_exceeds_limit(self, launcher):
        runner, pool = make_runner(launcher, limit=3)
        active = 0
        peak = 0

        async def execute(url, handle, config):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return TaskResult.ok({"url": url})

        try:
            outcome = await runner.run(Phase.METADATA, URLS * 2, limit=3, execute=execute)
        finally:
            await pool.drain()

        assert peak == 3
        assert outcome.peak_concurrency == 3
        assert outcome.success_count == 20
        assert launcher.peak_open_pages <= 3

    @pytest.mark.asyncio
    async def test_fewer_tasks_than_limit(self, launcher):
        runner, pool = make_runner(launcher, limit=8)

        async def execute(url, handle, config):
            return TaskResult.ok(url)

        try:
            outcome = await runner.run(Phase.EXTRACT, URLS[:2], limit=8, execute=execute)
        finally:
            await pool.drain()
        assert outcome.peak_concurrency <= 2
        assert sorted(outcome.results) == sorted(URLS[:2])

    @pytest.mark.asyncio
    async def test_empty_input_does_not_launch(self, launcher):
        runner, pool = make_runner(launcher)

        async def execute(url, handle, config):
            raise AssertionError("not called")

        outcome = await runner.run(Phase.DEEPEN, [], limit=3, execute=execute)
        await pool.drain()
        assert outcome.total == 0
        assert launcher.launch_attempts == 0

    @pytest.mark.asyncio
    async def test_config_passed_to_executor(self, launcher):
        runner, pool = make_runner(launcher)
        seen = []

        async def execute(url, handle, config):
            seen.append(config)
            return TaskResult.ok()

        try:
            await runner.run(Phase.EXTRACT, URLS[:2], limit=2, execute=execute, config={"x": 1})
        finally:
            await pool.drain()
        assert seen == [{"x": 1}, {"x": 1}]


class TestPartialSuccess:
    """Per-task failures are recorded; the phase goes on."""

    @pytest.mark.asyncio
    async def test_accounting(self, launcher):
        runner, pool = make_runner(launcher)
        bad = set(URLS[:3])

        async def execute(url, handle, config):
            if url in bad:
                return TaskResult.fail(ValidationError(f"bad url {url}"))
            return TaskResult.ok(url)

        try:
            outcome = await runner.run(Phase.METADATA, URLS, limit=3, execute=execute)
        finally:
            await pool.drain()

        assert outcome.success_count == 7
        assert outcome.failure_count == 3
        assert outcome.success_count + outcome.failure_count == len(URLS)
        assert {f.url for f in outcome.failures} == bad
        assert all(f.error_type == "ValidationError" for f in outcome.failures)
        assert launcher.open_pages == 0

    @pytest.mark.asyncio
    async def test_every_task_failing_raises_phase_failure(self, launcher):
        runner, pool = make_runner(launcher, max_retries=0)

        async def execute(url, handle, config):
            raise ValueError("invalid url")

        try:
            with pytest.raises(PhaseFailure) as exc_info:
                await runner.run(Phase.DEEPEN, URLS[:4], limit=2, execute=execute)
        finally:
            await pool.drain()
        assert exc_info.value.phase == Phase.DEEPEN
        assert exc_info.value.outcome.failure_count == 4

    @pytest.mark.asyncio
    async def test_lower_threshold(self, launcher):
        runner, pool = make_runner(launcher, threshold=0.5, max_retries=0)

        async def execute(url, handle, config):
            if url in URLS[:5]:
                raise ValidationError("rejected")
            return TaskResult.ok()

        try:
            with pytest.raises(PhaseFailure):
                await runner.run(Phase.METADATA, URLS, limit=2, execute=execute)
        finally:
            await pool.drain()


class TestRetry:
    """Transient failures are retried with backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, launcher):
        runner, pool = make_runner(launcher, max_retries=2)
        calls = Counter()

        async def execute(url, handle, config):
            calls[url] += 1
            if calls[url] <= 2:
                raise NetworkError("connection reset", url=url)
            return TaskResult.ok(url)

        try:
            outcome = await runner.run(Phase.DEEPEN, URLS[:3], limit=2, execute=execute)
        finally:
            await pool.drain()

        assert outcome.success_count == 3
        assert outcome.failure_count == 0
        assert all(n == 3 for n in calls.values())
        assert outcome.attempts == 9

    @pytest.mark.asyncio
    async def test_attempts_bounded_by_max_retries(self, launcher):
        """max_retries=2 → exactly 3 attempts, then a recorded failure."""
        runner, pool = make_runner(launcher, max_retries=2)
        calls = Counter()

        async def execute(url, handle, config):
            calls[url] += 1
            if url == URLS[0]:
                return TaskResult.fail("net::ERR_CONNECTION_RESET")
            return TaskResult.ok()

        try:
            outcome = await runner.run(Phase.METADATA, URLS[:3], limit=2, execute=execute)
        finally:
            await pool.drain()

        assert calls[URLS[0]] == 3
        assert outcome.failure_count == 1
        failure = outcome.failures[0]
        assert failure.attempts == 3
        assert failure.transient

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, launcher):
        runner, pool = make_runner(launcher, max_retries=3)
        calls = Counter()

        async def execute(url, handle, config):
            calls[url] += 1
            if url == URLS[0]:
                return TaskResult.fail("HTTP 404")
            return TaskResult.ok()

        try:
            outcome = await runner.run(Phase.METADATA, URLS[:2], limit=1, execute=execute)
        finally:
            await pool.drain()
        assert calls[URLS[0]] == 1
        assert outcome.failures[0].attempts == 1

    @pytest.mark.asyncio
    async def test_retries_counted_by_monitor(self, launcher):
        monitor = PerformanceMonitor()
        runner, pool = make_runner(launcher, max_retries=1, monitor=monitor)
        calls = Counter()

        async def execute(url, handle, config):
            calls[url] += 1
            if calls[url] == 1:
                raise NetworkError("timeout")
            return TaskResult.ok()

        try:
            await runner.run(Phase.DEEPEN, URLS[:2], limit=2, execute=execute)
        finally:
            await pool.drain()
        snapshot = await monitor.snapshot()
        assert snapshot.tasks_retried == 2
        assert snapshot.tasks_succeeded == 2


class TestTimeout:
    """Per-task timeout is a transient network failure."""

    @pytest.mark.asyncio
    async def test_slow_task_times_out(self, launcher):
        runner, pool = make_runner(launcher, timeout=0.05, max_retries=0)

        async def execute(url, handle, config):
            if url == URLS[0]:
                await asyncio.sleep(5)
            return TaskResult.ok()

        try:
            outcome = await runner.run(Phase.EXTRACT, URLS[:3], limit=3, execute=execute)
        finally:
            await pool.drain()

        assert outcome.success_count == 2
        assert outcome.failures[0].error_type == "NetworkError"
        assert outcome.failures[0].transient
        assert launcher.open_pages == 0


class TestAbort:
    """The abort event stops dispatch; in-flight work finishes."""

    @pytest.mark.asyncio
    async def test_pending_tasks_skipped(self, launcher):
        abort = asyncio.Event()
        runner, pool = make_runner(launcher, limit=1, abort_event=abort)
        executed = []

        async def execute(url, handle, config):
            executed.append(url)
            abort.set()
            return TaskResult.ok(url)

        try:
            outcome = await runner.run(Phase.METADATA, URLS[:5], limit=1, execute=execute)
        finally:
            await pool.drain()

        assert executed == URLS[:1]
        assert outcome.success_count == 1
        assert outcome.skipped_count == 4
        assert outcome.aborted

    @pytest.mark.asyncio
    async def test_configuration_error_aborts_phase(self, launcher):
        abort = asyncio.Event()
        runner, pool = make_runner(launcher, limit=1, abort_event=abort)

        async def execute(url, handle, config):
            raise ConfigurationError("bad extractor list")

        try:
            with pytest.raises(ConfigurationError):
                await runner.run(Phase.EXTRACT, URLS[:3], limit=1, execute=execute)
        finally:
            await pool.drain()
        assert abort.is_set()


class TestEscalation:
    """Phase-level failures surface as PhaseFailure."""

    @pytest.mark.asyncio
    async def test_filesystem_error_escalates(self, launcher):
        runner, pool = make_runner(launcher, limit=1)

        async def execute(url, handle, config):
            if url == URLS[0]:
                raise FileSystemError("disk full")
            return TaskResult.ok()

        try:
            with pytest.raises(PhaseFailure) as exc_info:
                await runner.run(Phase.EXTRACT, URLS[:3], limit=1, execute=execute)
        finally:
            await pool.drain()
        assert isinstance(exc_info.value.cause, FileSystemError)

    @pytest.mark.asyncio
    async def test_launch_failure_tagged_with_phase(self, make_launcher):
        launcher = make_launcher(fail_launches=1)
        runner, pool = make_runner(launcher)

        async def execute(url, handle, config):
            return TaskResult.ok()

        with pytest.raises(BrowserLaunchError) as exc_info:
            await runner.run(Phase.DEEPEN, URLS[:2], limit=2, execute=execute)
        await pool.drain()
        assert exc_info.value.phase == Phase.DEEPEN
