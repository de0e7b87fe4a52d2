"""Run records: PipelineRun, StageRun and the StageResult they consume.

Both records are state machines with explicit transition tables. Terminal
records are immutable: any further transition raises
InvalidTransitionError. Records are pydantic models so a RunStore can
persist them as JSON and a restarted orchestrator can reload them.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stageflow.kernel.domain.context import Trigger
from stageflow.kernel.exceptions import InvalidTransitionError


class StageStatus(StrEnum):
    """Lifecycle status of a stage within a run."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STAGE_STATES


class RunStatus(StrEnum):
    """Lifecycle status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATES


_TERMINAL_STAGE_STATES = frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED})
_TERMINAL_RUN_STATES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED})

# RUNNING -> READY is the retry path (and the resume path for interrupted stages)
STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.READY, StageStatus.SKIPPED}),
    StageStatus.READY: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED}),
    StageStatus.RUNNING: frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.READY}),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.ABORTED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.ABORTED: frozenset(),
}


class StageResult(BaseModel):
    """Outcome of one execution attempt, produced by the StageRunner.

    Attributes
    ----------
    stage : str
        Stage name
    succeeded : bool
        True iff exit code was zero and all declared outputs were produced
    exit_code : int | None
        Process exit status; None when the action never finished
    log_ref : str | None
        Artifact reference of the captured stdout/stderr
    artifacts : dict[str, str]
        Declared output name -> artifact reference
    error : str | None
        Error message if the attempt failed
    error_type : str | None
        Exception class name (NonZeroExitError, MissingArtifactError, ...)
    """

    stage: str
    succeeded: bool
    exit_code: int | None = None
    log_ref: str | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    started_at: float = Field(default_factory=time.time)
    finished_at: float = Field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at) * 1000


class AttemptRecord(BaseModel):
    """A failed attempt that was retried."""

    attempt: int
    exit_code: int | None = None
    log_ref: str | None = None
    error: str | None = None
    error_type: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


class StageRun(BaseModel):
    """Execution record of one stage within a run.

    Mutated only by the scheduler control loop; never after it reaches
    a terminal status.
    """

    name: str
    status: StageStatus = StageStatus.PENDING
    optional: bool = False
    attempt: int = 0
    retries_remaining: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    exit_code: int | None = None
    log_ref: str | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    skip_reason: str | None = None
    attempts: list[AttemptRecord] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _transition(self, to_state: StageStatus) -> None:
        if to_state not in STAGE_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"stage '{self.name}'", self.status, to_state)
        self.status = to_state

    def mark_ready(self) -> None:
        self._transition(StageStatus.READY)

    def mark_running(self) -> None:
        self._transition(StageStatus.RUNNING)
        self.attempt += 1
        self.started_at = time.time()
        self.finished_at = None

    def skip(self, reason: str) -> None:
        self._transition(StageStatus.SKIPPED)
        self.skip_reason = reason
        self.finished_at = time.time()

    def record(self, result: StageResult) -> None:
        """Record the final attempt and move to Succeeded or Failed."""
        self._transition(StageStatus.SUCCEEDED if result.succeeded else StageStatus.FAILED)
        self.started_at = result.started_at
        self.finished_at = result.finished_at
        self.exit_code = result.exit_code
        self.log_ref = result.log_ref
        self.artifacts = dict(result.artifacts)
        self.error = result.error
        self.error_type = result.error_type

    def requeue(self, result: StageResult) -> None:
        """Archive a failed attempt and return to Ready for a retry.

        The stage goes back to Ready (its prerequisites are already
        satisfied) and spends one unit of its retry budget.
        """
        if self.retries_remaining <= 0:
            raise InvalidTransitionError(f"stage '{self.name}'", self.status, "retry")
        self.attempts.append(
            AttemptRecord(
                attempt=self.attempt,
                exit_code=result.exit_code,
                log_ref=result.log_ref,
                error=result.error,
                error_type=result.error_type,
                started_at=result.started_at,
                finished_at=result.finished_at,
            )
        )
        self._transition(StageStatus.READY)
        self.retries_remaining -= 1
        self.started_at = None

    def interrupt(self, reason: str) -> None:
        """Return a stage orphaned by an orchestrator crash to Ready.

        The lost attempt is archived but does not consume retry budget.
        """
        self.attempts.append(
            AttemptRecord(
                attempt=self.attempt,
                error=reason,
                error_type="Interrupted",
                started_at=self.started_at,
            )
        )
        self._transition(StageStatus.READY)
        self.started_at = None


class PipelineRun(BaseModel):
    """One instantiation of a pipeline for a specific trigger."""

    run_id: str
    pipeline_name: str
    trigger: Trigger
    variables: dict[str, str] = Field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    stages: dict[str, StageRun] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None
    abort_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000

    def transition(self, to_state: RunStatus) -> None:
        if to_state not in RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"run '{self.run_id}'", self.status, to_state)
        self.status = to_state
        now = time.time()
        if to_state == RunStatus.RUNNING:
            self.started_at = now
        elif to_state.is_terminal:
            self.finished_at = now

    def stage_statuses(self) -> dict[str, str]:
        return {name: str(stage.status) for name, stage in self.stages.items()}

    def in_status(self, *statuses: StageStatus) -> list[str]:
        """Names of stages currently in any of *statuses*, in definition order."""
        return [name for name, stage in self.stages.items() if stage.status in statuses]

    def report(self) -> dict[str, Any]:
        """Final status plus per-stage status, exit codes and log references."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "status": str(self.status),
            "ref": self.trigger.ref,
            "commit_sha": self.trigger.commit_sha,
            "actor": self.trigger.actor,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "abort_reason": self.abort_reason,
            "stages": [
                {
                    "name": name,
                    "status": str(stage.status),
                    "attempts": stage.attempt,
                    "exit_code": stage.exit_code,
                    "log_ref": stage.log_ref,
                    "artifacts": dict(stage.artifacts),
                    "error": stage.error,
                    "error_type": stage.error_type,
                    "skip_reason": stage.skip_reason,
                }
                for name, stage in self.stages.items()
            ],
        }
