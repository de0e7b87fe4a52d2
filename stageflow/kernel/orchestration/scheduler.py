"""Scheduler: the single cooperative control loop of a run.

All StageRun mutation happens here, on one event loop, so no locks are
needed. Each iteration:

1. asks the graph for Ready stages (which also applies skips)
2. dispatches Ready stages as asyncio tasks while slots are free
3. suspends until an in-flight stage completes or an abort is requested
4. hands the result to the run hooks (the controller), then repeats

The loop ends when the graph reports every stage terminal.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Protocol

from stageflow.kernel.domain.run import StageResult, StageStatus
from stageflow.kernel.exceptions import AbortedError, ActionError, OrchestratorError
from stageflow.kernel.logging import get_logger

if TYPE_CHECKING:
    from stageflow.kernel.domain.context import RunContext
    from stageflow.kernel.domain.graph import DependencyGraph
    from stageflow.kernel.domain.run import PipelineRun
    from stageflow.kernel.orchestration.stage_runner import StageRunner

logger = get_logger(__name__)


class RunHooks(Protocol):
    """Callbacks through which the scheduler reports to the controller."""

    async def on_dispatch(self, run: PipelineRun, name: str) -> None:
        """A stage was marked Running and dispatched."""
        ...

    async def on_skipped(self, run: PipelineRun, names: list[str]) -> None:
        """Stages moved to Skipped during the last readiness pass."""
        ...

    async def on_result(self, run: PipelineRun, name: str, result: StageResult, *, halting: bool) -> str | None:
        """Apply a stage result to the run.

        Returns a reason string when the run must stop dispatching (a
        required stage failed for good), otherwise None. When ``halting``
        is True the run is already stopping and no retry may be queued.
        """
        ...


class Scheduler:
    """Dispatches Ready stages of one run to the stage runner.

    Parameters
    ----------
    graph : DependencyGraph
        Validated graph of the pipeline
    runner : StageRunner
        Executes single attempts
    hooks : RunHooks
        Receives dispatch, skip and result notifications
    max_concurrency : int
        Maximum number of Running stages at once
    cancel_on_failure : bool
        Cancel in-flight stages as soon as the run halts on failure
    halt_reason : str, optional
        Start halted, e.g. when resuming a run whose required stage already failed
    """

    def __init__(
        self,
        graph: DependencyGraph,
        runner: StageRunner,
        hooks: RunHooks,
        *,
        max_concurrency: int = 4,
        cancel_on_failure: bool = False,
        halt_reason: str | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise OrchestratorError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.graph = graph
        self.runner = runner
        self.hooks = hooks
        self.max_concurrency = max_concurrency
        self.cancel_on_failure = cancel_on_failure

        self._abort_event = asyncio.Event()
        self._abort_reason: str | None = None
        self._halt_reason: str | None = halt_reason
        self._in_flight: dict[asyncio.Task[StageResult], str] = {}
        self.peak_concurrency = 0

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------

    def abort(self, reason: str) -> None:
        """Request an abort; the loop wakes up immediately. Idempotent."""
        if self._abort_event.is_set():
            return
        self._abort_reason = reason
        self._abort_event.set()

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight.values())

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def run(self, run: PipelineRun, context: RunContext) -> None:
        """Drive *run* until every stage is terminal.

        Raises
        ------
        OrchestratorError
            If the loop runs out of work while stages are not terminal
        """
        abort_waiter = asyncio.create_task(self._abort_event.wait(), name=f"abort:{run.run_id}")
        try:
            while True:
                if self.aborted:
                    await self._abort_in_flight(run)
                    await self._skip_remaining(run, f"run aborted: {self._abort_reason}")
                    break

                if self._halt_reason is None:
                    await self._dispatch_ready(run, context)
                else:
                    await self._skip_remaining(run, f"run halted: {self._halt_reason}")

                if not self._in_flight:
                    break

                done, _ = await asyncio.wait(
                    {*self._in_flight, abort_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is abort_waiter:
                        continue
                    name = self._in_flight.pop(task)
                    await self._handle_result(run, name, self._task_result(run, name, task))
        finally:
            abort_waiter.cancel()
            if self._in_flight:
                # Only reached when the loop itself is failing or being cancelled
                await self._cancel_tasks(list(self._in_flight))
                self._in_flight.clear()

        if not self.graph.is_terminal(run):
            stuck = [name for name, stage in run.stages.items() if not stage.is_terminal]
            raise OrchestratorError(
                f"Run '{run.run_id}' ran out of work with non-terminal stages: {', '.join(stuck)}"
            )

    async def _dispatch_ready(self, run: PipelineRun, context: RunContext) -> None:
        skipped_before = set(run.in_status(StageStatus.SKIPPED))
        ready = self.graph.ready_stages(run, context)
        newly_skipped = [n for n in run.in_status(StageStatus.SKIPPED) if n not in skipped_before]
        if newly_skipped:
            await self.hooks.on_skipped(run, newly_skipped)

        for name in ready:
            if len(self._in_flight) >= self.max_concurrency:
                break
            run.stages[name].mark_running()
            await self.hooks.on_dispatch(run, name)
            task = asyncio.create_task(self._execute(run, context, name), name=f"stage:{name}")
            self._in_flight[task] = name
            self.peak_concurrency = max(self.peak_concurrency, len(self._in_flight))

    async def _execute(self, run: PipelineRun, context: RunContext, name: str) -> StageResult:
        stage = self.graph[name]
        inputs: dict[str, str] = {}
        for artifact in stage.inputs:
            producer = self.graph.producer_of(artifact)
            if producer is not None and artifact in run.stages[producer].artifacts:
                inputs[artifact] = run.stages[producer].artifacts[artifact]
        return await self.runner.execute(
            stage, inputs, context, attempt=run.stages[name].attempt, run_id=run.run_id
        )

    async def _handle_result(self, run: PipelineRun, name: str, result: StageResult) -> None:
        halting = self._halt_reason is not None or self.aborted
        reason = await self.hooks.on_result(run, name, result, halting=halting)
        if reason is not None and self._halt_reason is None:
            self._halt_reason = reason
            logger.warning("Run '{}' halting: {}", run.run_id, reason)
            if self.cancel_on_failure and self._in_flight:
                logger.info("Cancelling in-flight stages: {}", ", ".join(self._in_flight.values()))
                for task in self._in_flight:
                    task.cancel()

    def _task_result(self, run: PipelineRun, name: str, task: asyncio.Task[StageResult]) -> StageResult:
        """Turn a finished task into a StageResult, whatever way it ended."""
        started_at = run.stages[name].started_at or time.time()
        if task.cancelled():
            if self.aborted:
                error: Exception = AbortedError(run.run_id, self._abort_reason or "aborted")
            else:
                error = ActionError(name, f"cancelled: {self._halt_reason or 'run stopping'}")
            return StageResult(
                stage=name,
                succeeded=False,
                error=str(error),
                error_type=type(error).__name__,
                started_at=started_at,
            )
        if (exc := task.exception()) is not None:
            logger.opt(exception=exc).error("Stage task '{}' crashed", name)
            return StageResult(
                stage=name,
                succeeded=False,
                error=f"{type(exc).__name__}: {exc}",
                error_type=ActionError.__name__,
                started_at=started_at,
            )
        return task.result()

    async def _abort_in_flight(self, run: PipelineRun) -> None:
        tasks = list(self._in_flight)
        if tasks:
            logger.warning("Aborting in-flight stages: {}", ", ".join(self._in_flight.values()))
            await self._cancel_tasks(tasks)
        for task in tasks:
            name = self._in_flight.pop(task)
            result = self._task_result(run, name, task)
            if not task.cancelled() and not result.succeeded:
                # Finished on its own while the abort was being processed
                result = result.model_copy(
                    update={
                        "error": str(AbortedError(run.run_id, self._abort_reason or "aborted")),
                        "error_type": AbortedError.__name__,
                    }
                )
            await self._handle_result(run, name, result)

    async def _skip_remaining(self, run: PipelineRun, reason: str) -> None:
        skipped = self.graph.skip_remaining(run, reason)
        if skipped:
            await self.hooks.on_skipped(run, skipped)

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[StageResult]]) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
