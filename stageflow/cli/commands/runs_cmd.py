"""Runs commands for stageflow CLI - inspect and resume recorded runs."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import click
import typer
from rich.console import Console
from rich.table import Table

from stageflow.cli.commands.run_cmd import drive, report_run
from stageflow.cli.utils import (
    cli_errors,
    get_config,
    local_stores,
    print_output,
    run_table,
    styled_status,
)
from stageflow.compiler.pipeline_loader import PipelineLoader
from stageflow.kernel.exceptions import ResourceNotFoundError

if TYPE_CHECKING:
    from stageflow.kernel.domain.run import PipelineRun
    from stageflow.kernel.orchestration.controller import PipelineController

app = typer.Typer()
console = Console()


def _timestamp(value: float | None) -> str:
    if value is None:
        return ""
    from datetime import datetime  # noqa: PLC0415

    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _load_run(run_id: str) -> PipelineRun:
    ctx = click.get_current_context()
    _, run_store = local_stores(get_config(ctx))
    return asyncio.run(run_store.aload(run_id))


@app.command("list")
def list_runs(
    pipeline: Annotated[str | None, typer.Option("--pipeline", "-p", help="Only runs of this pipeline")] = None,
    limit: Annotated[int, typer.Option("--limit", min=1)] = 20,
) -> None:
    """List recorded runs, newest first."""
    ctx = click.get_current_context()
    _, run_store = local_stores(get_config(ctx))
    with cli_errors():
        runs = asyncio.run(run_store.alist(pipeline))[:limit]

    if ctx.obj and ctx.obj.get("output_format") == "json":
        print_output(
            [
                {
                    "run_id": r.run_id,
                    "pipeline": r.pipeline_name,
                    "status": str(r.status),
                    "ref": r.trigger.ref,
                    "commit_sha": r.trigger.commit_sha,
                    "created_at": r.created_at,
                }
                for r in runs
            ],
            ctx,
        )
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run ID")
    table.add_column("Pipeline")
    table.add_column("Status")
    table.add_column("Ref")
    table.add_column("Commit")
    table.add_column("Created")
    for r in runs:
        table.add_row(
            r.run_id,
            r.pipeline_name,
            styled_status(str(r.status)),
            r.trigger.ref,
            r.trigger.commit_sha[:12],
            _timestamp(r.created_at),
        )
    console.print(table)


@app.command("show")
def show_run(run_id: str) -> None:
    """Show the final report of a run."""
    ctx = click.get_current_context()
    with cli_errors():
        run = _load_run(run_id)

    if ctx.obj and ctx.obj.get("output_format") == "json":
        print_output(run.report(), ctx)
        return

    console.print(run_table(run))
    console.print(
        f"[dim]ref {run.trigger.ref} @ {run.trigger.commit_sha} by {run.trigger.actor}, "
        f"started {_timestamp(run.started_at)}[/dim]"
    )
    if run.error:
        console.print(f"[red]{run.error}[/red]")


@app.command("logs")
def run_logs(
    run_id: str,
    stage: str,
    attempt: Annotated[int | None, typer.Option("--attempt", "-a", help="Attempt number (default: last)")] = None,
) -> None:
    """Print the captured log of a stage attempt."""
    ctx = click.get_current_context()
    artifact_store, _ = local_stores(get_config(ctx))

    with cli_errors():
        run = _load_run(run_id)
        if stage not in run.stages:
            raise ResourceNotFoundError("stage", stage, list(run.stages))
        stage_run = run.stages[stage]

        log_refs = {record.attempt: record.log_ref for record in stage_run.attempts}
        if stage_run.attempt:
            log_refs.setdefault(stage_run.attempt, stage_run.log_ref)
        chosen = attempt if attempt is not None else max(log_refs, default=None)
        log_ref = log_refs.get(chosen) if chosen is not None else None
        if log_ref is None:
            console.print(f"[yellow]No log captured for stage '{stage}' (attempt {chosen})[/yellow]")
            raise typer.Exit(1)

        async def read() -> bytes:
            artifact = await artifact_store.aget(log_ref)
            return await artifact_store.aread(artifact.digest)

        content = asyncio.run(read())

    typer.echo(content.decode(errors="replace"), nl=False)


@app.command("artifacts")
def run_artifacts(run_id: str) -> None:
    """List the artifacts and logs stored for a run."""
    ctx = click.get_current_context()
    artifact_store, _ = local_stores(get_config(ctx))
    with cli_errors():
        artifacts = asyncio.run(artifact_store.alist(run_id))

    if ctx.obj and ctx.obj.get("output_format") == "json":
        print_output([a.model_dump(mode="json") for a in artifacts], ctx)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Reference", style="cyan")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Digest", style="dim")
    table.add_column("Consumers")
    for a in artifacts:
        table.add_row(a.ref, str(a.kind), str(a.size), a.digest[:16], ", ".join(a.consumers))
    console.print(table)


@app.command("resume")
def resume_run(
    pipeline_file: Annotated[
        Path, typer.Argument(help="Pipeline manifest of the run", exists=True, dir_okay=False)
    ],
    run_id: str,
) -> None:
    """Resume a run interrupted while Running.

    Terminal stages keep their results; stages that were in flight run again.
    """
    ctx = click.get_current_context()
    config = get_config(ctx)
    show_progress = not (ctx.obj or {}).get("quiet") and (ctx.obj or {}).get("output_format") != "json"

    async def resume(controller: PipelineController) -> PipelineRun:
        return await controller.resume(run_id)

    with cli_errors():
        pipeline = PipelineLoader().load_file(pipeline_file)
        if show_progress:
            console.print(f"[cyan]Resuming run {run_id}[/cyan]")
        result = asyncio.run(drive(pipeline, config, resume, show_progress=show_progress))

    report_run(ctx, result)
