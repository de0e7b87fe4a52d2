"""Tests for the scheduler control loop."""

import asyncio

import pytest

from stageflow.drivers.artifact_store import InMemoryArtifactStore
from stageflow.kernel.domain import (
    DependencyGraph,
    PipelineRun,
    RunContext,
    StageResult,
    StageStatus,
    Trigger,
)
from stageflow.kernel.exceptions import OrchestratorError
from stageflow.kernel.orchestration import Scheduler, StageRunner


class RecordingHooks:
    """Minimal run hooks: record every result, halt on any failure."""

    def __init__(self) -> None:
        self.dispatched: list[str] = []
        self.skipped: list[str] = []
        self.results: dict[str, StageResult] = {}

    async def on_dispatch(self, run: PipelineRun, name: str) -> None:
        self.dispatched.append(name)

    async def on_skipped(self, run: PipelineRun, names: list[str]) -> None:
        self.skipped.extend(names)

    async def on_result(self, run: PipelineRun, name: str, result: StageResult, *, halting: bool) -> str | None:
        run.stages[name].record(result)
        self.results[name] = result
        return None if result.succeeded else f"'{name}' failed"


def setup(stages, action, **kwargs) -> tuple[Scheduler, RecordingHooks, PipelineRun, RunContext]:
    graph = DependencyGraph(stages)
    graph.validate()
    runner = StageRunner(InMemoryArtifactStore(), {"fake": action})
    hooks = RecordingHooks()
    trigger = Trigger(ref="refs/heads/main", commit_sha="abc", actor="dev")
    run = PipelineRun(run_id="r1", pipeline_name="p", trigger=trigger, stages=graph.new_stage_runs())
    return Scheduler(graph, runner, hooks, **kwargs), hooks, run, RunContext(trigger=trigger)


class TestConcurrency:
    """Tests for the concurrency bound."""

    @pytest.mark.asyncio
    async def test_bound_respected(self, scripted, make_stage) -> None:
        action = scripted(default_delay=0.05)
        stages = [make_stage(f"s{i}") for i in range(5)]
        scheduler, hooks, run, context = setup(stages, action, max_concurrency=2)

        await scheduler.run(run, context)

        assert action.peak == 2
        assert scheduler.peak_concurrency == 2
        assert all(s.status == StageStatus.SUCCEEDED for s in run.stages.values())
        assert sorted(hooks.dispatched) == [f"s{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_independent_stages_overlap(self, scripted, make_stage) -> None:
        action = scripted(default_delay=0.05)
        stages = [make_stage("compile"), make_stage("scan", ["compile"]), make_stage("test", ["compile"])]
        scheduler, _, run, context = setup(stages, action, max_concurrency=4)

        await scheduler.run(run, context)

        assert action.peak == 2
        assert action.calls[0] == ("compile", 1)

    def test_invalid_bound(self, scripted, make_stage) -> None:
        with pytest.raises(OrchestratorError):
            setup([make_stage("a")], scripted(), max_concurrency=0)


class TestHalting:
    """Tests for the failure halt."""

    @pytest.mark.asyncio
    async def test_in_flight_stages_drain(self, scripted, make_stage) -> None:
        """After a failure, running stages finish and unstarted ones are skipped."""
        action = scripted(exit_codes={"a": [1]}, delays={"b": 0.1})
        stages = [make_stage("a"), make_stage("b"), make_stage("c", ["a"]), make_stage("d")]
        scheduler, hooks, run, context = setup(stages, action, max_concurrency=2)

        await scheduler.run(run, context)

        assert run.stages["a"].status == StageStatus.FAILED
        assert run.stages["b"].status == StageStatus.SUCCEEDED
        assert run.stages["c"].status == StageStatus.SKIPPED
        assert run.stages["d"].status == StageStatus.SKIPPED
        assert "run halted" in run.stages["d"].skip_reason
        assert action.called("d") == 0
        assert scheduler.halt_reason == "'a' failed"

    @pytest.mark.asyncio
    async def test_starts_halted(self, scripted, make_stage) -> None:
        action = scripted()
        scheduler, hooks, run, context = setup(
            [make_stage("a"), make_stage("b", ["a"])], action, halt_reason="earlier failure"
        )

        await scheduler.run(run, context)

        assert action.calls == []
        assert hooks.skipped == ["a", "b"]
        assert run.stages["b"].skip_reason == "run halted: earlier failure"

    @pytest.mark.asyncio
    async def test_cancel_on_failure(self, scripted, make_stage) -> None:
        action = scripted(exit_codes={"a": [1]}, delays={"a": 0.01, "b": 5})
        scheduler, hooks, run, context = setup(
            [make_stage("a"), make_stage("b")], action, cancel_on_failure=True
        )

        await asyncio.wait_for(scheduler.run(run, context), timeout=2)

        assert action.cancelled == ["b"]
        assert run.stages["b"].status == StageStatus.FAILED
        assert run.stages["b"].error_type == "ActionError"
        assert "cancelled" in run.stages["b"].error


class TestAbort:
    """Tests for abort requests."""

    @pytest.mark.asyncio
    async def test_abort_cancels_running_and_skips_rest(self, scripted, make_stage) -> None:
        action = scripted(delays={"build": 5})
        stages = [make_stage("build"), make_stage("deploy", ["build"])]
        scheduler, hooks, run, context = setup(stages, action)

        task = asyncio.create_task(scheduler.run(run, context))
        await asyncio.wait_for(action.started["build"].wait(), timeout=1)
        scheduler.abort("cancelled by user")
        scheduler.abort("second request")
        await asyncio.wait_for(task, timeout=2)

        assert scheduler.abort_reason == "cancelled by user"
        assert run.stages["build"].status == StageStatus.FAILED
        assert run.stages["build"].error_type == "AbortedError"
        assert run.stages["deploy"].status == StageStatus.SKIPPED
        assert "run aborted" in run.stages["deploy"].skip_reason
        assert action.cancelled == ["build"]
        assert scheduler.in_flight == []
