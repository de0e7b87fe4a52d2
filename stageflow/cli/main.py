"""stageflow CLI - Main entrypoint."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import typer
from rich.console import Console

from stageflow.cli.commands import run_cmd, runs_cmd, validate_cmd
from stageflow.cli.utils import cli_errors
from stageflow.compiler.config_loader import load_config
from stageflow.kernel.logging import configure_logging

# Create the main Typer app
app = typer.Typer(
    name="stageflow",
    help="stageflow - CI/CD pipeline orchestration: stages, artifacts, retries and conditions.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

console = Console()

# Add subcommands
app.command("validate", help="Validate a pipeline manifest and show its execution waves")(
    validate_cmd.validate
)
app.command("run", help="Trigger a pipeline run and wait for it to finish")(run_cmd.run)
app.add_typer(runs_cmd.app, name="runs", help="Inspect and resume recorded runs")


def _version_callback(value: bool) -> None:
    if not value:
        return
    from stageflow import __version__  # noqa: PLC0415

    console.print(f"[bold blue]stageflow[/bold blue] version [green]{__version__}[/green]")
    raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    *,
    config_path: Path | None = typer.Option(
        None, "--config", "-c", help="Configuration file (YAML or pyproject.toml)"
    ),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Suppress non-error output"),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Enable verbose logging"),
    json_out: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level: debug|info|warning|error"
    ),
    version: bool = typer.Option(
        False, "--version", "-v", help="Show version and exit", callback=_version_callback, is_eager=True
    ),
) -> None:
    """stageflow CLI - pipeline orchestration.

    Global flags are parsed here and stored on `ctx.obj` for subcommands.
    """
    if ctx.obj is None:
        ctx.obj = {}

    with cli_errors():
        config = load_config(config_path)

    # Compute effective log level
    effective_level = log_level.upper() if log_level else config.logging.level
    if effective_level == "WARN":
        effective_level = "WARNING"
    if quiet:
        effective_level = "ERROR"
    elif verbose:
        effective_level = "DEBUG"
    logging_config = replace(config.logging, level=effective_level)

    configure_logging(
        level=logging_config.level,
        format=logging_config.format,
        output_file=logging_config.output_file,
        use_color=logging_config.use_color,
        include_timestamp=logging_config.include_timestamp,
        backtrace=logging_config.backtrace,
        diagnose=logging_config.diagnose,
    )

    ctx.obj.update({
        "config": config,
        "quiet": quiet,
        "verbose": verbose,
        "output_format": "json" if json_out else "pretty",
        "log_level": effective_level,
    })


def main() -> None:
    """Main CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
