"""Tests for run records and their state machines."""

import pytest

from stageflow.kernel.domain import (
    PipelineRun,
    RunStatus,
    StageResult,
    StageRun,
    StageStatus,
    Trigger,
)
from stageflow.kernel.exceptions import InvalidTransitionError


def running_stage(retries: int = 0) -> StageRun:
    stage_run = StageRun(name="test", retries_remaining=retries)
    stage_run.mark_ready()
    stage_run.mark_running()
    return stage_run


def failed(exit_code: int = 1) -> StageResult:
    return StageResult(
        stage="test",
        succeeded=False,
        exit_code=exit_code,
        log_ref="r1/test/log.1",
        error="Stage 'test' failed: exit status 1",
        error_type="NonZeroExitError",
    )


class TestStageStatus:
    """Tests for status enums."""

    def test_terminal_states(self) -> None:
        assert {s for s in StageStatus if s.is_terminal} == {
            StageStatus.SUCCEEDED,
            StageStatus.FAILED,
            StageStatus.SKIPPED,
        }
        assert {s for s in RunStatus if s.is_terminal} == {
            RunStatus.SUCCEEDED,
            RunStatus.FAILED,
            RunStatus.ABORTED,
        }


class TestStageRun:
    """Tests for StageRun transitions."""

    def test_pending_cannot_run_directly(self) -> None:
        with pytest.raises(InvalidTransitionError):
            StageRun(name="test").mark_running()

    def test_mark_running_counts_attempts(self) -> None:
        stage_run = running_stage()
        assert stage_run.status == StageStatus.RUNNING
        assert stage_run.attempt == 1
        assert stage_run.started_at is not None

    def test_record_success(self) -> None:
        stage_run = running_stage()
        stage_run.record(
            StageResult(stage="test", succeeded=True, exit_code=0, artifacts={"reports": "r1/test/reports"})
        )
        assert stage_run.status == StageStatus.SUCCEEDED
        assert stage_run.exit_code == 0
        assert stage_run.artifacts == {"reports": "r1/test/reports"}

    def test_terminal_is_immutable(self) -> None:
        stage_run = running_stage()
        stage_run.record(failed())
        with pytest.raises(InvalidTransitionError):
            stage_run.mark_ready()
        with pytest.raises(InvalidTransitionError):
            stage_run.skip("late")
        assert stage_run.status == StageStatus.FAILED

    def test_requeue_returns_to_ready(self) -> None:
        """A retried stage goes Running -> Ready and spends one retry."""
        stage_run = running_stage(retries=2)
        stage_run.requeue(failed())

        assert stage_run.status == StageStatus.READY
        assert stage_run.retries_remaining == 1
        assert len(stage_run.attempts) == 1
        assert stage_run.attempts[0].attempt == 1
        assert stage_run.attempts[0].error_type == "NonZeroExitError"

        stage_run.mark_running()
        assert stage_run.attempt == 2

    def test_requeue_without_budget(self) -> None:
        stage_run = running_stage(retries=0)
        with pytest.raises(InvalidTransitionError):
            stage_run.requeue(failed())

    def test_interrupt_keeps_budget(self) -> None:
        stage_run = running_stage(retries=1)
        stage_run.interrupt("orchestrator restarted")

        assert stage_run.status == StageStatus.READY
        assert stage_run.retries_remaining == 1
        assert stage_run.attempts[0].error_type == "Interrupted"


class TestPipelineRun:
    """Tests for PipelineRun transitions and reporting."""

    @pytest.fixture
    def run(self) -> PipelineRun:
        return PipelineRun(
            run_id="r1",
            pipeline_name="java-ci",
            trigger=Trigger(ref="refs/heads/main", commit_sha="abc", actor="dev"),
            stages={"compile": StageRun(name="compile"), "test": StageRun(name="test")},
        )

    def test_lifecycle(self, run: PipelineRun) -> None:
        run.transition(RunStatus.RUNNING)
        run.transition(RunStatus.SUCCEEDED)
        assert run.is_terminal
        assert run.duration_ms is not None

    def test_terminal_run_is_immutable(self, run: PipelineRun) -> None:
        run.transition(RunStatus.ABORTED)
        with pytest.raises(InvalidTransitionError):
            run.transition(RunStatus.RUNNING)

    def test_pending_cannot_succeed(self, run: PipelineRun) -> None:
        with pytest.raises(InvalidTransitionError):
            run.transition(RunStatus.SUCCEEDED)

    def test_report(self, run: PipelineRun) -> None:
        run.stages["compile"].mark_ready()
        run.stages["compile"].mark_running()
        run.stages["compile"].record(
            StageResult(stage="compile", succeeded=True, exit_code=0, log_ref="r1/compile/log.1")
        )
        run.stages["test"].skip("condition 'False' evaluated to false")

        report = run.report()

        assert report["status"] == "pending"
        assert report["ref"] == "refs/heads/main"
        stages = {s["name"]: s for s in report["stages"]}
        assert stages["compile"]["status"] == "succeeded"
        assert stages["compile"]["log_ref"] == "r1/compile/log.1"
        assert stages["compile"]["attempts"] == 1
        assert stages["test"]["status"] == "skipped"
        assert stages["test"]["skip_reason"].startswith("condition")

    def test_in_status_keeps_definition_order(self, run: PipelineRun) -> None:
        assert run.in_status(StageStatus.PENDING) == ["compile", "test"]
        assert run.stage_statuses() == {"compile": "pending", "test": "pending"}
