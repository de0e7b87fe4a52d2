"""Pipeline validation command for stageflow CLI."""

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from stageflow.cli.utils import cli_errors, print_output
from stageflow.compiler.pipeline_loader import PipelineLoader

console = Console()


def validate(
    ctx: typer.Context,
    pipeline_file: Annotated[
        Path,
        typer.Argument(
            help="Path to the pipeline manifest",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
) -> None:
    """Validate a pipeline manifest.

    This command validates:
    - YAML syntax and manifest structure (kind, metadata, spec)
    - Stage fields, action references and run conditions
    - Unique stage names, known prerequisites, no cycles
    - Artifact wiring (every input produced by an ancestor stage)

    Examples
    --------
    stageflow validate pipelines/java-ci.yaml
    stageflow --json validate pipelines/java-ci.yaml
    """
    with cli_errors():
        pipeline = PipelineLoader().load_file(pipeline_file)
        waves = pipeline.build_graph().waves()

    if ctx.obj and ctx.obj.get("output_format") == "json":
        print_output(
            {
                "valid": True,
                "pipeline": pipeline.name,
                "stages": pipeline.stage_names,
                "waves": waves,
            },
            ctx,
        )
        return

    console.print(f"[green]✓ Validation successful:[/green] {pipeline_file}")
    console.print(f"  Pipeline: [bold]{pipeline.name}[/bold] ({len(pipeline.stages)} stages)")

    table = Table(show_header=True, header_style="bold magenta", title="Execution waves")
    table.add_column("Wave", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Action")
    table.add_column("Needs", style="dim")
    table.add_column("When", style="yellow")
    for index, wave in enumerate(waves, start=1):
        for name in wave:
            stage = pipeline[name]
            table.add_row(
                str(index),
                name + (" (optional)" if stage.optional else ""),
                stage.action,
                ", ".join(stage.needs),
                stage.when or "",
            )
    console.print(table)
