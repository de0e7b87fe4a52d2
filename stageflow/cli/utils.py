"""CLI helper utilities for stageflow commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol

import typer
import yaml
from rich.console import Console
from rich.table import Table

from stageflow.compiler.config_loader import get_default_config
from stageflow.kernel.exceptions import (
    ConfigurationError,
    GraphError,
    StageflowError,
    ValidationError,
)

if TYPE_CHECKING:
    from stageflow.drivers.artifact_store import LocalArtifactStore
    from stageflow.drivers.run_store import JsonFileRunStore
    from stageflow.kernel.config import StageflowConfig
    from stageflow.kernel.domain.run import PipelineRun


class ContextProtocol(Protocol):
    """Protocol for common interface between Click and Typer contexts."""

    @property
    def obj(self) -> dict[str, Any] | None: ...


console = Console()

STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "skipped": "yellow",
    "aborted": "red",
    "running": "cyan",
    "ready": "cyan",
    "pending": "dim",
}

# Exit codes: 1 = run failed / runtime error, 2 = invalid definition or configuration
EXIT_FAILED = 1
EXIT_INVALID = 2


def output_format(ctx: ContextProtocol | None) -> str:
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    if isinstance(settings, dict):
        return str(settings.get("output_format", "pretty"))
    return "pretty"


def print_output(data: Any, ctx: ContextProtocol | None = None) -> None:
    """Print `data` according to `ctx.obj['output_format']`.

    If ctx is None or no format specified, pretty-print using rich.console.
    """
    fmt = output_format(ctx)
    if fmt == "json":
        typer.echo(json.dumps(data, default=str, indent=2))
    elif fmt == "yaml":
        typer.echo(yaml.safe_dump(data, sort_keys=False))
    elif isinstance(data, (str, int, float)):
        typer.echo(str(data))
    else:
        console.print(data)


def get_config(ctx: ContextProtocol | None) -> StageflowConfig:
    """Configuration loaded by the root callback, or the defaults."""
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    if isinstance(settings, dict) and settings.get("config") is not None:
        return settings["config"]
    return get_default_config()


def local_stores(config: StageflowConfig) -> tuple[LocalArtifactStore, JsonFileRunStore]:
    """On-disk artifact and run stores at the configured locations."""
    from stageflow.drivers.artifact_store import LocalArtifactStore  # noqa: PLC0415
    from stageflow.drivers.run_store import JsonFileRunStore  # noqa: PLC0415

    return (
        LocalArtifactStore(config.storage.artifact_dir),
        JsonFileRunStore(config.storage.run_dir),
    )


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn stageflow errors into a red message and a non-zero exit."""
    try:
        yield
    except (ConfigurationError, ValidationError, GraphError) as e:
        console.print(f"[red]✗ Invalid definition:[/red] {e}")
        raise typer.Exit(EXIT_INVALID) from e
    except FileNotFoundError as e:
        console.print(f"[red]✗ File Error:[/red] {e}")
        raise typer.Exit(EXIT_INVALID) from e
    except StageflowError as e:
        console.print(f"[red]✗ Error:[/red] {e}")
        raise typer.Exit(EXIT_FAILED) from e


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def run_table(run: PipelineRun) -> Table:
    """Per-stage results of a run as a rich table."""
    table = Table(
        title=f"{run.pipeline_name} · run {run.run_id} · {styled_status(str(run.status))}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("Log")
    table.add_column("Detail", style="dim")

    for name, stage in run.stages.items():
        detail = stage.error or stage.skip_reason or ""
        if stage.artifacts:
            detail = ", ".join(sorted(stage.artifacts))
        table.add_row(
            name,
            styled_status(str(stage.status)),
            str(stage.attempt),
            "" if stage.exit_code is None else str(stage.exit_code),
            stage.log_ref or "",
            detail,
        )
    return table
