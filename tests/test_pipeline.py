"""
End-to-end tests for PipelineOrchestrator against an in-memory site.

Sites come from ``FakeSite.build``: a home page linking to N pages, each
optionally linking to one child page (found by Deepen).
"""

from __future__ import annotations

import json

import pytest

from tokencrawler.errors import ConfigurationError, FileSystemError, PipelineAborted, ValidationError
from tokencrawler.models import Phase, PipelineState, SiteCategory, TaskResult
from tokencrawler.phases import MetadataTask
from tokencrawler.pipeline import PipelineOrchestrator
from tokencrawler.run_config import PipelineOptions

BASE = "https://example.com/"


def make_options(output_dir, **kwargs):
    kwargs.setdefault("retry_base_delay_ms", 0)
    kwargs.setdefault("max_retries", 1)
    return PipelineOptions(output_dir=str(output_dir), **kwargs)


def read(output_dir, name):
    return json.loads((output_dir / name).read_text())


class FlakyMetadataTask(MetadataTask):
    """Raises a permanent error for the first ``failures`` calls."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def execute(self, url, handle, config=None) -> TaskResult:
        if self.failures > 0:
            self.failures -= 1
            raise ValidationError(f"rejected {url}")
        return await super().execute(url, handle, config)


class StoppingMetadataTask(MetadataTask):
    """Requests a stop from inside the first metadata task."""

    def __init__(self):
        super().__init__()
        self.orchestrator = None

    async def execute(self, url, handle, config=None) -> TaskResult:
        self.orchestrator.stop()
        return await super().execute(url, handle, config)


class TestSmallSite:
    """Small sites run every phase one after another."""

    @pytest.mark.asyncio
    async def test_full_run_writes_every_artifact(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(4))
        orchestrator = PipelineOrchestrator(make_options(output_dir), launcher=launcher)
        report = await orchestrator.run(BASE)

        assert report.state == PipelineState.COMPLETED
        assert report.site_profile.category == SiteCategory.SMALL
        assert not report.parallel_used
        assert not report.degraded

        paths = read(output_dir, "paths.json")
        assert paths["total_paths"] == 5
        assert {p["url"] for p in paths["all_paths"]} == {BASE} | {f"{BASE}page-{i}" for i in range(4)}

        metadata = read(output_dir, "metadata.json")
        assert metadata["total_pages"] == 5
        # home + three body-class templates
        assert len(metadata["unique_paths"]) == 4

        index = read(output_dir, "extract/_index.json")
        assert index["total_pages"] == 4
        assert BASE in {entry["url"] for entry in index["pages"]}
        assert len({entry["file"] for entry in index["pages"]}) == 4
        for entry in index["pages"]:
            page = read(output_dir, entry["file"])
            assert page["url"] == entry["url"]
            assert set(page["data"]) == {"typography", "colors", "spacing", "borders", "animations"}

        perf = read(output_dir, "performance-report.json")
        assert perf["state"] == "completed"
        assert perf["metrics"]["quality_gate"]["passed"]

    @pytest.mark.asyncio
    async def test_extract_files_never_overwrite_each_other(self, output_dir, make_launcher, make_site):
        site = make_site(
            links={BASE: ["/a/b", "/a-b"]},
            body_classes={BASE: ["home"], f"{BASE}a/b": ["post"], f"{BASE}a-b": ["landing"]},
        )
        report = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)

        assert report.outcomes[Phase.EXTRACT].success_count == 3
        assert len(list((output_dir / "extract").glob("*.json"))) == 3 + 1
        index = read(output_dir, "extract/_index.json")
        for entry in index["pages"]:
            assert read(output_dir, entry["file"])["url"] == entry["url"]

    @pytest.mark.asyncio
    async def test_state_history(self, output_dir, make_launcher, make_site):
        orchestrator = PipelineOrchestrator(make_options(output_dir),
                                            launcher=make_launcher(make_site.build(2)))
        await orchestrator.run(BASE)
        history = orchestrator.state_history
        assert history[0] == "idle"
        assert history.index("running_phase:initial") < history.index("classifying_site")
        assert history.index("classifying_site") < history.index("running_phase:deepen")
        assert history.index("running_phase:metadata") < history.index("running_phase:extract")
        assert history[-1] == "completed"

    @pytest.mark.asyncio
    async def test_resources_released(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(6))
        await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)
        assert launcher.browsers
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_limits_respected(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(12, delay=0.005))
        report = await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)
        for phase in (Phase.DEEPEN, Phase.METADATA, Phase.EXTRACT):
            outcome = report.outcomes[phase]
            assert outcome.peak_concurrency <= report.concurrency.limit_for(phase)


class TestParallelPhases:
    """Medium sites overlap Deepen and Metadata, then reconcile."""

    @pytest.mark.asyncio
    async def test_reconciliation_covers_late_paths(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(20, children=True))
        report = await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)

        assert report.site_profile.category == SiteCategory.MEDIUM
        assert report.parallel_used
        assert report.state == PipelineState.COMPLETED

        paths = read(output_dir, "paths.json")
        assert paths["total_paths"] == 41
        metadata = read(output_dir, "metadata.json")
        covered = {p["url"] for p in metadata["paths_with_metadata"]}
        assert covered == {p["url"] for p in paths["all_paths"]}
        assert report.outcomes[Phase.METADATA].success_count == 41
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_parallel_limits(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(20, children=True, delay=0.005))
        report = await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)
        assert report.outcomes[Phase.DEEPEN].peak_concurrency <= 6
        assert report.outcomes[Phase.METADATA].peak_concurrency <= 4
        assert report.outcomes[Phase.EXTRACT].peak_concurrency <= 3
        assert launcher.peak_open_pages <= 6 + 4

    @pytest.mark.asyncio
    async def test_force_sequential_disables_overlap(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(20, children=True))
        options = make_options(output_dir, force_sequential=True)
        report = await PipelineOrchestrator(options, launcher=launcher).run(BASE)
        assert report.site_profile.category == SiteCategory.MEDIUM
        assert not report.parallel_used
        assert report.outcomes[Phase.METADATA].success_count == 41

    @pytest.mark.asyncio
    async def test_sequential_mode_uses_small_limits(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(20))
        options = make_options(output_dir, mode="sequential")
        report = await PipelineOrchestrator(options, launcher=launcher).run(BASE)
        assert not report.parallel_used
        assert report.concurrency.limit_for(Phase.METADATA) == 2

    @pytest.mark.asyncio
    async def test_concurrency_override(self, output_dir, make_launcher, make_site):
        options = make_options(output_dir, concurrency_overrides={"deepen": 50})
        report = await PipelineOrchestrator(
            options, launcher=make_launcher(make_site.build(3)),
        ).run(BASE)
        assert report.concurrency.limit_for(Phase.DEEPEN) == 20

    @pytest.mark.asyncio
    async def test_large_site_limits(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(59, delay=0.002))
        report = await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)

        assert report.site_profile.page_count_estimate == 60
        assert report.site_profile.category == SiteCategory.LARGE
        assert report.concurrency.limit_for(Phase.DEEPEN) == 12
        assert report.concurrency.limit_for(Phase.METADATA) == 8
        assert report.outcomes[Phase.DEEPEN].peak_concurrency <= 12
        assert report.outcomes[Phase.METADATA].peak_concurrency <= 8
        assert launcher.peak_open_pages <= 12 + 8
        assert launcher.all_closed


class TestCaching:
    """A second run with nothing changed does no work."""

    @pytest.mark.asyncio
    async def test_second_run_is_fully_cached(self, output_dir, make_launcher, make_site):
        site = make_site.build(20, children=True)
        await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        first_metadata = read(output_dir, "metadata.json")

        second_launcher = make_launcher(site)
        report = await PipelineOrchestrator(make_options(output_dir), launcher=second_launcher).run(BASE)

        assert report.state == PipelineState.COMPLETED
        assert all(o.from_cache for o in report.outcomes.values())
        assert set(report.outcomes) == set(Phase)
        assert second_launcher.launch_attempts == 0
        assert read(output_dir, "metadata.json") == first_metadata

    @pytest.mark.asyncio
    async def test_force_bypasses_cache(self, output_dir, make_launcher, make_site):
        site = make_site.build(3)
        await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        launcher = make_launcher(site)
        report = await PipelineOrchestrator(make_options(output_dir, force=True), launcher=launcher).run(BASE)
        assert not any(o.from_cache for o in report.outcomes.values())
        assert launcher.launch_attempts > 0

    @pytest.mark.asyncio
    async def test_deleted_artifact_reruns_phase(self, output_dir, make_launcher, make_site):
        site = make_site.build(3)
        await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        (output_dir / "extract" / "_index.json").unlink()
        report = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        assert report.outcomes[Phase.METADATA].from_cache
        assert not report.outcomes[Phase.EXTRACT].from_cache
        assert (output_dir / "extract" / "_index.json").exists()

    @pytest.mark.asyncio
    async def test_deleted_page_file_reruns_extract(self, output_dir, make_launcher, make_site):
        site = make_site.build(3)
        await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        entry = read(output_dir, "extract/_index.json")["pages"][0]
        (output_dir / entry["file"]).unlink()

        report = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        assert report.outcomes[Phase.METADATA].from_cache
        assert not report.outcomes[Phase.EXTRACT].from_cache
        assert (output_dir / entry["file"]).exists()

    @pytest.mark.asyncio
    async def test_config_change_reruns_dependent_phase(self, output_dir, make_launcher, make_site):
        site = make_site.build(3)
        await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        options = make_options(output_dir, extractors=("colors",))
        report = await PipelineOrchestrator(options, launcher=make_launcher(site)).run(BASE)
        assert report.outcomes[Phase.METADATA].from_cache
        assert not report.outcomes[Phase.EXTRACT].from_cache


class TestDegradation:
    """Fallback, quality gate and aborts."""

    @pytest.mark.asyncio
    async def test_phase_failure_falls_back_to_sequential(self, output_dir, make_launcher, make_site):
        orchestrator = PipelineOrchestrator(
            make_options(output_dir),
            launcher=make_launcher(make_site.build(4)),
            tasks={Phase.METADATA: FlakyMetadataTask(failures=5)},
        )
        report = await orchestrator.run(BASE)

        assert report.state == PipelineState.COMPLETED
        assert report.degraded
        assert "fallback:metadata" in report.degraded_reasons
        assert report.fallbacks == ["metadata"]
        assert report.outcomes[Phase.METADATA].success_count == 5
        assert "fallback_to_sequential:metadata" in orchestrator.state_history

    @pytest.mark.asyncio
    async def test_no_fallback_in_sequential_mode(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(4))
        orchestrator = PipelineOrchestrator(
            make_options(output_dir, mode="sequential"),
            launcher=launcher,
            tasks={Phase.METADATA: FlakyMetadataTask(failures=100)},
        )
        report = await orchestrator.run(BASE)
        # paths.json exists, so the report comes back instead of an exception
        assert report.state == PipelineState.ABORTED
        assert report.fallbacks == []
        assert report.error["code"] == "PHASE_FAILURE"
        assert Phase.EXTRACT not in report.outcomes
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_deepen_launch_failure_completes_degraded(self, output_dir, make_launcher, make_site):
        # launch 1 serves Initial, launch 2 is Deepen's first pool
        launcher = make_launcher(make_site.build(4, children=True), fail_on={2})
        orchestrator = PipelineOrchestrator(make_options(output_dir), launcher=launcher)
        report = await orchestrator.run(BASE)

        assert report.state == PipelineState.COMPLETED
        assert report.degraded
        assert "fallback:deepen" in report.degraded_reasons
        assert report.fallbacks == ["deepen"]
        assert report.outcomes[Phase.DEEPEN].success_count > 0
        assert read(output_dir, "paths.json")["total_paths"] == 9
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_overlap_launch_failures_fall_back_and_reconcile(self, output_dir, make_launcher, make_site):
        # launch 1 serves Initial; 2-5 are both two-browser pools of the overlap
        launcher = make_launcher(make_site.build(20, children=True), fail_on={2, 3, 4, 5})
        orchestrator = PipelineOrchestrator(make_options(output_dir), launcher=launcher)
        report = await orchestrator.run(BASE)

        assert report.site_profile.category == SiteCategory.MEDIUM
        assert report.parallel_used
        assert report.state == PipelineState.COMPLETED
        assert sorted(report.fallbacks) == ["deepen", "metadata"]
        assert {"fallback:deepen", "fallback:metadata"} <= set(report.degraded_reasons)

        paths = read(output_dir, "paths.json")
        assert paths["total_paths"] == 41
        covered = {p["url"] for p in read(output_dir, "metadata.json")["paths_with_metadata"]}
        assert covered == {p["url"] for p in paths["all_paths"]}
        assert report.outcomes[Phase.METADATA].success_count == 41
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_overlap_metadata_failure_falls_back_and_reconciles(self, output_dir, make_launcher, make_site):
        launcher = make_launcher(make_site.build(20, children=True))
        orchestrator = PipelineOrchestrator(
            make_options(output_dir),
            launcher=launcher,
            tasks={Phase.METADATA: FlakyMetadataTask(failures=21)},
        )
        report = await orchestrator.run(BASE)

        assert report.parallel_used
        assert report.state == PipelineState.COMPLETED
        assert report.fallbacks == ["metadata"]
        assert report.outcomes[Phase.DEEPEN].success_count == 20
        assert report.outcomes[Phase.METADATA].success_count == 41
        assert report.outcomes[Phase.METADATA].failure_count == 0
        assert read(output_dir, "metadata.json")["total_pages"] == 41
        assert launcher.all_closed

    @pytest.mark.asyncio
    async def test_quality_gate_marks_degraded(self, output_dir, make_launcher, make_site):
        site = make_site.build(4)
        site.status[f"{BASE}page-3"] = 404
        report = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)

        assert report.state == PipelineState.COMPLETED
        assert report.outcomes[Phase.METADATA].failure_count == 1
        assert report.degraded
        assert "quality_gate" in report.degraded_reasons
        metadata = read(output_dir, "metadata.json")
        assert [p["url"] for p in metadata["problem_paths"]] == [f"{BASE}page-3"]

    @pytest.mark.asyncio
    async def test_initial_failure_aborts(self, output_dir, make_launcher, make_site):
        site = make_site.build(4)
        site.status[BASE] = 404
        launcher = make_launcher(site)
        with pytest.raises(PipelineAborted) as exc_info:
            await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run(BASE)

        report = exc_info.value.report
        assert report.state == PipelineState.ABORTED
        assert report.fallbacks == ["initial"]
        assert report.outcomes[Phase.INITIAL].failure_count == 1
        assert launcher.all_closed
        assert not (output_dir / "paths.json").exists()
        assert report.error["category"] == "network"
        assert exc_info.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_stop_skips_pending_tasks(self, output_dir, make_launcher, make_site):
        task = StoppingMetadataTask()
        orchestrator = PipelineOrchestrator(
            make_options(output_dir, concurrency_overrides={"metadata": 1}),
            launcher=make_launcher(make_site.build(6)),
            tasks={Phase.METADATA: task},
        )
        task.orchestrator = orchestrator
        report = await orchestrator.run(BASE)

        metadata = report.outcomes[Phase.METADATA]
        assert report.state == PipelineState.ABORTED
        assert metadata.aborted
        assert metadata.success_count == 1
        assert metadata.skipped_count == 6
        assert Phase.EXTRACT not in report.outcomes
        assert orchestrator.launcher.all_closed

    @pytest.mark.asyncio
    async def test_aborted_phase_is_not_cached(self, output_dir, make_launcher, make_site):
        site = make_site.build(6)
        task = StoppingMetadataTask()
        orchestrator = PipelineOrchestrator(
            make_options(output_dir, concurrency_overrides={"metadata": 1}),
            launcher=make_launcher(site), tasks={Phase.METADATA: task},
        )
        task.orchestrator = orchestrator
        await orchestrator.run(BASE)

        report = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)).run(BASE)
        assert report.outcomes[Phase.DEEPEN].from_cache
        assert not report.outcomes[Phase.METADATA].from_cache
        assert report.outcomes[Phase.METADATA].success_count == 7


class TestValidation:
    """Bad input never starts a phase."""

    def test_invalid_options_rejected_on_construction(self, output_dir, launcher):
        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(make_options(output_dir, timeout_ms=0), launcher=launcher)

    def test_invalid_override_rejected(self, output_dir, launcher):
        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(make_options(output_dir, concurrency_overrides={"deepen": 0}),
                                 launcher=launcher)

    @pytest.mark.asyncio
    async def test_invalid_url(self, output_dir, launcher):
        with pytest.raises(ValidationError):
            await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run("ftp://nowhere")
        assert launcher.launch_attempts == 0


class TestSinglePhase:
    """run_phase works from the artifacts on disk."""

    @pytest.mark.asyncio
    async def test_initial_then_metadata(self, output_dir, make_launcher, make_site):
        site = make_site.build(4)
        initial = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)) \
            .run_phase(Phase.INITIAL, BASE)
        assert initial.success_count == 1

        metadata = await PipelineOrchestrator(make_options(output_dir), launcher=make_launcher(site)) \
            .run_phase(Phase.METADATA)
        assert metadata.success_count == 5
        assert read(output_dir, "metadata.json")["total_pages"] == 5

    @pytest.mark.asyncio
    async def test_metadata_without_paths_fails(self, output_dir, launcher):
        with pytest.raises(FileSystemError):
            await PipelineOrchestrator(make_options(output_dir), launcher=launcher).run_phase(Phase.METADATA)
