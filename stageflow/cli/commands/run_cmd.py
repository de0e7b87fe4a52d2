"""Run command for stageflow CLI - trigger a pipeline and wait for it."""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console

from stageflow.cli.utils import (
    ContextProtocol,
    cli_errors,
    get_config,
    local_stores,
    print_output,
    run_table,
)
from stageflow.compiler.pipeline_loader import PipelineLoader
from stageflow.kernel.domain.context import Trigger
from stageflow.kernel.domain.run import RunStatus
from stageflow.kernel.orchestration.events import (
    Event,
    PipelineAborted,
    StageCompleted,
    StageFailed,
    StageRetrying,
    StageSkipped,
    StageStarted,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from stageflow.kernel.config import StageflowConfig
    from stageflow.kernel.domain.pipeline import PipelineDefinition
    from stageflow.kernel.domain.run import PipelineRun
    from stageflow.kernel.orchestration.controller import PipelineController
    from stageflow.kernel.ports.observer_manager import ObserverManager

console = Console()

PROGRESS_EVENTS = (StageStarted, StageCompleted, StageFailed, StageRetrying, StageSkipped, PipelineAborted)


def parse_variables(pairs: list[str] | None) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options.

    Raises
    ------
    typer.BadParameter
        If an entry has no ``=`` or an empty key
    """
    variables: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        variables[key.strip()] = value
    return variables


def build_controller(
    pipeline: PipelineDefinition,
    config: StageflowConfig,
    observer_manager: ObserverManager | None = None,
) -> PipelineController:
    """Controller wired to the on-disk stores and the environment secret resolver."""
    from stageflow.drivers.secrets import EnvSecretResolver  # noqa: PLC0415
    from stageflow.kernel.orchestration.controller import PipelineController  # noqa: PLC0415

    artifact_store, run_store = local_stores(config)
    return PipelineController(
        pipeline,
        config=config.orchestrator,
        artifact_store=artifact_store,
        secret_resolver=EnvSecretResolver(env_prefix=config.secret_prefix),
        run_store=run_store,
        observer_manager=observer_manager,
    )


def progress_printer(event: Event) -> None:
    console.print(event.log_message(), markup=False, highlight=False)


async def drive(
    pipeline: PipelineDefinition,
    config: StageflowConfig,
    action: Callable[[PipelineController], Awaitable[PipelineRun]],
    *,
    show_progress: bool,
) -> PipelineRun:
    """Build a controller, run *action* against it and close the observers."""
    from stageflow.drivers.observer_manager import LocalObserverManager  # noqa: PLC0415

    async with LocalObserverManager() as observers:
        if show_progress:
            observers.register(progress_printer, observer_id="cli-progress", event_types=PROGRESS_EVENTS)
        controller = build_controller(pipeline, config, observers)
        return await action(controller)


def report_run(ctx: ContextProtocol, run: PipelineRun) -> None:
    """Print the run report and exit non-zero unless the run succeeded."""
    if ctx.obj and ctx.obj.get("output_format") == "json":
        print_output(run.report(), ctx)
    else:
        console.print(run_table(run))
        if run.error:
            console.print(f"[red]{run.error}[/red]")
        if run.abort_reason:
            console.print(f"[red]Aborted: {run.abort_reason}[/red]")
    if run.status != RunStatus.SUCCEEDED:
        raise typer.Exit(1)


def run(
    ctx: typer.Context,
    pipeline_file: Annotated[
        Path,
        typer.Argument(help="Pipeline manifest", exists=True, dir_okay=False, readable=True),
    ],
    ref: Annotated[str, typer.Option("--ref", help="Git ref that triggered the run")] = "refs/heads/main",
    sha: Annotated[str, typer.Option("--sha", help="Commit SHA")] = "HEAD",
    actor: Annotated[str | None, typer.Option("--actor", help="Who triggered the run")] = None,
    event: Annotated[str, typer.Option("--event", help="Trigger event type")] = "push",
    variables: Annotated[
        list[str] | None, typer.Option("--var", help="Run variable KEY=VALUE (repeatable)")
    ] = None,
    max_concurrency: Annotated[
        int | None, typer.Option("--max-concurrency", min=1, help="Override max concurrent stages")
    ] = None,
    run_id: Annotated[str | None, typer.Option("--run-id", help="Explicit run identifier")] = None,
) -> None:
    """Trigger a pipeline run and wait until it is terminal.

    Examples
    --------
    stageflow run pipelines/java-ci.yaml --ref refs/heads/main --sha 3f2a1c0
    stageflow run pipelines/java-ci.yaml --ref feature-x --var PROFILE=fast
    """
    config = get_config(ctx)
    if max_concurrency is not None:
        config = replace(config, orchestrator=replace(config.orchestrator, max_concurrency=max_concurrency))

    run_variables = parse_variables(variables)
    trigger = Trigger(ref=ref, commit_sha=sha, actor=actor or os.getenv("USER", "local"), event_type=event)
    show_progress = not (ctx.obj or {}).get("quiet") and (ctx.obj or {}).get("output_format") != "json"

    async def start(controller: PipelineController) -> PipelineRun:
        created = controller.create_run(trigger, run_variables, run_id=run_id)
        if show_progress:
            console.print(f"[cyan]Run started:[/cyan] {created.run_id}")
        return await controller.execute(created)

    with cli_errors():
        pipeline = PipelineLoader().load_file(pipeline_file)
        try:
            result = asyncio.run(drive(pipeline, config, start, show_progress=show_progress))
        except KeyboardInterrupt:
            console.print(
                "[yellow]Interrupted; resume with[/yellow] stageflow runs resume "
                f"{pipeline_file} <run-id>"
            )
            raise typer.Exit(130) from None

    report_run(ctx, result)
