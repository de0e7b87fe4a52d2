"""Pipeline controller: the top-level state machine of each run.

The controller creates runs from triggers, drives them through the
scheduler, applies retry and failure rules to stage results, persists the
run after every transition, emits events, and handles abort and resume.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from stageflow.kernel.domain.context import RunContext, Trigger
from stageflow.kernel.domain.run import PipelineRun, RunStatus, StageResult, StageStatus
from stageflow.kernel.exceptions import (
    AbortedError,
    ConfigurationError,
    OrchestratorError,
    ResourceNotFoundError,
)
from stageflow.kernel.logging import get_logger, reset_correlation_id, set_correlation_id
from stageflow.kernel.orchestration.events import (
    Event,
    PipelineAborted,
    PipelineCompleted,
    PipelineStarted,
    StageCompleted,
    StageFailed,
    StageRetrying,
    StageSkipped,
    StageStarted,
)
from stageflow.kernel.orchestration.models import OrchestratorConfig
from stageflow.kernel.orchestration.scheduler import Scheduler
from stageflow.kernel.orchestration.stage_runner import StageRunner
from stageflow.kernel.types import SecretRef

if TYPE_CHECKING:
    from stageflow.kernel.domain.pipeline import PipelineDefinition
    from stageflow.kernel.ports.action import ActionAdapter
    from stageflow.kernel.ports.artifact_store import ArtifactStore
    from stageflow.kernel.ports.observer_manager import ObserverManager
    from stageflow.kernel.ports.run_store import RunStore
    from stageflow.kernel.ports.secret import SecretResolver

logger = get_logger(__name__)

INTERRUPTED_REASON = "orchestrator restarted while the stage was running"


class PipelineController:
    """Runs a PipelineDefinition against triggers.

    Run state machine: ``pending -> running -> {succeeded, failed, aborted}``.

    - A failed stage with retry budget left goes back to Ready and is
      dispatched again with the same inputs.
    - The first required stage that fails for good halts the run: no new
      dispatches, in-flight stages drain (or are cancelled when
      ``cancel_on_failure`` is set), unstarted stages are Skipped and the
      run ends Failed.
    - A failed optional stage does not fail the run; its dependents are
      Skipped.
    - The run Succeeds when every stage is terminal and no required stage
      Failed.

    Parameters
    ----------
    pipeline : PipelineDefinition
        Validated pipeline definition
    config : OrchestratorConfig | None
        Execution settings (concurrency, timeouts, skip policy)
    artifact_store : ArtifactStore | None
        Defaults to an in-memory store
    adapters : Mapping[str, ActionAdapter] | None
        Action adapters by scheme; defaults to ``shell:`` and ``py:``
    secret_resolver : SecretResolver | None
        Defaults to reading the orchestrator's environment
    run_store : RunStore | None
        Defaults to an in-memory store
    observer_manager : ObserverManager | None
        Receives lifecycle events when given
    runner : StageRunner | None
        Replaces the runner built from the arguments above

    Examples
    --------
    Example usage::

        controller = PipelineController(pipeline, config=OrchestratorConfig(max_concurrency=2))
        run = await controller.trigger(Trigger(ref="refs/heads/main", commit_sha="abc", actor="dev"))
        run.status  # RunStatus.SUCCEEDED
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        config: OrchestratorConfig | None = None,
        artifact_store: ArtifactStore | None = None,
        adapters: Mapping[str, ActionAdapter] | None = None,
        secret_resolver: SecretResolver | None = None,
        run_store: RunStore | None = None,
        observer_manager: ObserverManager | None = None,
        runner: StageRunner | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.config = config or OrchestratorConfig()
        self.graph = pipeline.build_graph(self.config.skip_policy)

        # Lazy imports keep the kernel free of module-level driver dependencies
        if artifact_store is None:
            from stageflow.drivers.artifact_store import (  # noqa: PLC0415
                InMemoryArtifactStore,
            )

            artifact_store = InMemoryArtifactStore()
        if adapters is None:
            from stageflow.drivers.actions import (  # noqa: PLC0415
                CallableAction,
                SubprocessAction,
            )

            adapters = {
                "shell": SubprocessAction(grace_period=self.config.cancel_grace_period),
                "py": CallableAction(),
            }
        if secret_resolver is None:
            from stageflow.drivers.secrets import EnvSecretResolver  # noqa: PLC0415

            secret_resolver = EnvSecretResolver()
        if run_store is None:
            from stageflow.drivers.run_store import InMemoryRunStore  # noqa: PLC0415

            run_store = InMemoryRunStore()

        self.artifact_store = artifact_store
        self.run_store = run_store
        self.observer_manager = observer_manager
        self.runner = runner or StageRunner(
            artifact_store,
            adapters,
            secret_resolver,
            default_timeout=self.config.default_stage_timeout,
            workspace_root=workspace_root,
        )

        unknown = sorted({s.scheme for s in pipeline.stages} - set(self.runner.adapters))
        if unknown:
            raise ConfigurationError(
                "adapters", f"no action adapter for scheme(s): {', '.join(f'{s!r}' for s in unknown)}"
            )

        self._runs: dict[str, PipelineRun] = {}
        self._schedulers: dict[str, Scheduler] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_run(
        self,
        trigger: Trigger,
        variables: Mapping[str, str] | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        """Create a Pending run for *trigger*.

        Run variables are the pipeline's variables overlaid with *variables*.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        if run_id in self._runs:
            raise OrchestratorError(f"Run '{run_id}' already exists")

        run = PipelineRun(
            run_id=run_id,
            pipeline_name=self.pipeline.name,
            trigger=trigger,
            variables={**self.pipeline.variables, **(variables or {})},
            stages=self.graph.new_stage_runs(),
        )
        self._runs[run_id] = run
        logger.debug("Created run {} for {} at {}", run_id, trigger.ref, trigger.commit_sha)
        return run

    async def trigger(
        self, trigger: Trigger, variables: Mapping[str, str] | None = None
    ) -> PipelineRun:
        """Create a run for *trigger* and execute it to completion."""
        run = self.create_run(trigger, variables)
        return await self.execute(run)

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Execute a Pending run until it is terminal.

        A run aborted while still Pending is returned unchanged.

        Raises
        ------
        OrchestratorError
            If the run is already executing or the control loop breaks an invariant
        """
        self._runs.setdefault(run.run_id, run)
        if run.is_terminal:
            logger.info("Run {} is already {}; nothing to execute", run.run_id, run.status)
            return run
        if run.status != RunStatus.PENDING or run.run_id in self._schedulers:
            raise OrchestratorError(f"Run '{run.run_id}' is already {run.status}")

        # Registered before the first await so abort() always finds the loop
        scheduler = self._register_scheduler(run)
        token = set_correlation_id(run.run_id)
        try:
            run.transition(RunStatus.RUNNING)
            await self._persist(run)
            await self._emit(
                PipelineStarted(
                    run_id=run.run_id,
                    pipeline=run.pipeline_name,
                    total_stages=len(run.stages),
                    ref=run.trigger.ref,
                )
            )
            await self._drive(run, scheduler)
        finally:
            reset_correlation_id(token)
            self._schedulers.pop(run.run_id, None)
        return run

    async def abort(self, run_id: str, reason: str = "aborted by request") -> PipelineRun:
        """Abort a run.

        In-flight stages are cancelled and end Failed with AbortedError;
        Pending and Ready stages become Skipped; the run becomes Aborted.
        Idempotent, and a no-op on terminal runs.

        Raises
        ------
        ResourceNotFoundError
            If the run is unknown to this controller
        """
        run = self.get_run(run_id)
        if run.is_terminal:
            logger.debug("Abort of {} ignored: run is already {}", run_id, run.status)
            return run

        scheduler = self._schedulers.get(run_id)
        if scheduler is not None:
            # The control loop finalizes the run when it wakes up
            scheduler.abort(reason)
            return run

        # Pending run, or a Running run whose loop is gone (loaded from the store)
        cancelled = run.in_status(StageStatus.RUNNING)
        for name in cancelled:
            stage_run = run.stages[name]
            stage_run.record(
                StageResult(
                    stage=name,
                    succeeded=False,
                    error=str(AbortedError(run_id, reason)),
                    error_type=AbortedError.__name__,
                    started_at=stage_run.started_at or run.created_at,
                )
            )
        skipped = self.graph.skip_remaining(run, f"run aborted: {reason}")
        await self._finish_aborted(run, reason, cancelled, skipped)
        return run

    async def resume(self, run_id: str) -> PipelineRun:
        """Reload a run from the run store and continue it.

        Stages that were Running when the orchestrator stopped return to
        Ready (the lost attempt is archived) and the control loop resumes.

        Raises
        ------
        ResourceNotFoundError
            If the run store does not know the run
        ConfigurationError
            If the run belongs to another pipeline or its stages differ
        """
        if run_id in self._schedulers:
            raise OrchestratorError(f"Run '{run_id}' is currently executing")

        run = await self.run_store.aload(run_id)
        if run.pipeline_name != self.pipeline.name:
            raise ConfigurationError(
                "resume", f"run '{run_id}' belongs to pipeline '{run.pipeline_name}', not '{self.pipeline.name}'"
            )
        if set(run.stages) != set(self.graph):
            raise ConfigurationError("resume", f"stages of run '{run_id}' do not match pipeline '{self.pipeline.name}'")

        self._runs[run_id] = run
        if run.is_terminal:
            logger.info("Run {} is already {}; nothing to resume", run_id, run.status)
            return run
        if run.status == RunStatus.PENDING:
            return await self.execute(run)

        failed = [n for n in run.in_status(StageStatus.FAILED) if not run.stages[n].optional]
        halt_reason = None
        if failed:
            halt_reason = f"required stage '{failed[0]}' failed: {run.stages[failed[0]].error}"

        scheduler = self._register_scheduler(run, halt_reason)
        token = set_correlation_id(run_id)
        try:
            interrupted = run.in_status(StageStatus.RUNNING)
            for name in interrupted:
                run.stages[name].interrupt(INTERRUPTED_REASON)
            logger.info(
                "Resuming run {} ({} interrupted stage(s) re-queued: {})",
                run_id,
                len(interrupted),
                ", ".join(interrupted) or "none",
            )
            if halt_reason is not None:
                logger.warning("Run {} resumes halted: {}", run_id, halt_reason)
            await self._persist(run)
            await self._drive(run, scheduler)
        finally:
            reset_correlation_id(token)
            self._schedulers.pop(run_id, None)
        return run

    def get_run(self, run_id: str) -> PipelineRun:
        """Return a run known to this controller.

        Raises
        ------
        ResourceNotFoundError
            If the run is unknown
        """
        try:
            return self._runs[run_id]
        except KeyError:
            raise ResourceNotFoundError("run", run_id, list(self._runs)) from None

    async def list_runs(self) -> list[PipelineRun]:
        """Runs of this pipeline in the run store, newest first."""
        return await self.run_store.alist(self.pipeline.name)

    def context_for(self, run: PipelineRun) -> RunContext:
        """Build the RunContext of a run; secrets stay opaque handles."""
        return RunContext(
            trigger=run.trigger,
            variables=run.variables,
            secrets={name: SecretRef(key) for name, key in self.pipeline.secrets.items()},
        )

    # ------------------------------------------------------------------
    # Scheduler hooks
    # ------------------------------------------------------------------

    async def on_dispatch(self, run: PipelineRun, name: str) -> None:
        await self._persist(run)
        await self._emit(
            StageStarted(
                run_id=run.run_id,
                name=name,
                attempt=run.stages[name].attempt,
                needs=self.graph[name].needs,
            )
        )

    async def on_skipped(self, run: PipelineRun, names: list[str]) -> None:
        await self._persist(run)
        for name in names:
            await self._emit(StageSkipped(run_id=run.run_id, name=name, reason=run.stages[name].skip_reason))

    async def on_result(
        self, run: PipelineRun, name: str, result: StageResult, *, halting: bool
    ) -> str | None:
        """Apply a stage result: retry, record success, or record failure."""
        stage_run = run.stages[name]

        if (
            not result.succeeded
            and not halting
            and stage_run.retries_remaining > 0
            and result.error_type != AbortedError.__name__
        ):
            attempt = stage_run.attempt
            stage_run.requeue(result)
            await self._persist(run)
            await self._emit(
                StageRetrying(
                    run_id=run.run_id,
                    name=name,
                    attempt=attempt,
                    retries_remaining=stage_run.retries_remaining,
                    error=result.error,
                )
            )
            return None

        stage_run.record(result)
        await self._persist(run)

        if result.succeeded:
            await self._emit(
                StageCompleted(
                    run_id=run.run_id,
                    name=name,
                    attempt=stage_run.attempt,
                    duration_ms=result.duration_ms,
                    artifacts=dict(result.artifacts),
                )
            )
            return None

        await self._emit(
            StageFailed(
                run_id=run.run_id,
                name=name,
                attempt=stage_run.attempt,
                error=result.error,
                error_type=result.error_type,
                optional=stage_run.optional,
            )
        )
        if stage_run.optional:
            return None
        return f"required stage '{name}' failed: {result.error}"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register_scheduler(self, run: PipelineRun, halt_reason: str | None = None) -> Scheduler:
        scheduler = Scheduler(
            self.graph,
            self.runner,
            self,
            max_concurrency=self.config.max_concurrency,
            cancel_on_failure=self.config.cancel_on_failure,
            halt_reason=halt_reason,
        )
        self._schedulers[run.run_id] = scheduler
        return scheduler

    async def _drive(self, run: PipelineRun, scheduler: Scheduler) -> None:
        try:
            await scheduler.run(run, self.context_for(run))
        except OrchestratorError as e:
            logger.error("Run {} broke an orchestrator invariant: {}", run.run_id, e)
            run.error = str(e)
            run.transition(RunStatus.FAILED)
            await self._persist(run)
            raise

        if scheduler.aborted:
            cancelled = [
                name
                for name, stage in run.stages.items()
                if stage.error_type == AbortedError.__name__
            ]
            await self._finish_aborted(run, scheduler.abort_reason or "aborted", cancelled, [])
            return

        failed = [name for name, stage in run.stages.items() if stage.status == StageStatus.FAILED and not stage.optional]
        if failed:
            run.error = scheduler.halt_reason or f"required stage(s) failed: {', '.join(failed)}"
            run.transition(RunStatus.FAILED)
        else:
            run.transition(RunStatus.SUCCEEDED)
        await self._persist(run)
        await self._emit(
            PipelineCompleted(
                run_id=run.run_id,
                pipeline=run.pipeline_name,
                status=str(run.status),
                duration_ms=run.duration_ms,
            )
        )

    async def _finish_aborted(
        self, run: PipelineRun, reason: str, cancelled: list[str], skipped: list[str]
    ) -> None:
        run.abort_reason = reason
        run.error = str(AbortedError(run.run_id, reason))
        run.transition(RunStatus.ABORTED)
        await self._persist(run)
        for name in skipped:
            await self._emit(StageSkipped(run_id=run.run_id, name=name, reason=run.stages[name].skip_reason))
        await self._emit(
            PipelineAborted(
                run_id=run.run_id,
                pipeline=run.pipeline_name,
                reason=reason,
                cancelled_stages=tuple(cancelled),
            )
        )

    async def _persist(self, run: PipelineRun) -> None:
        await self.run_store.asave(run)

    async def _emit(self, event: Event) -> None:
        logger.info(event.log_message())
        if self.observer_manager is not None:
            await self.observer_manager.notify(event)
