"""Configuration data models for stageflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from stageflow.kernel.orchestration.models import OrchestratorConfig


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Logging configuration.

    Attributes
    ----------
    level : str, default="INFO"
        Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    format : str, default="structured"
        Output format (console, json, structured, rich)
    output_file : str | None, default=None
        Optional file path to write JSON logs to
    use_color : bool, default=True
        Use ANSI color codes (auto-disabled for non-TTY)
    include_timestamp : bool, default=True
        Include timestamp in log output
    backtrace : bool, default=True
        Enable extended backtraces
    diagnose : bool, default=False
        Show variable values in tracebacks (may expose sensitive data)

    Examples
    --------
    TOML configuration:

    ```toml
    [tool.stageflow.logging]
    level = "DEBUG"
    format = "rich"
    ```

    Environment variable overrides:

    ```bash
    export STAGEFLOW_LOG_LEVEL=DEBUG
    export STAGEFLOW_LOG_FORMAT=json
    ```
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "structured", "rich"] = "structured"
    output_file: str | None = None
    use_color: bool = True
    include_timestamp: bool = True
    backtrace: bool = True
    diagnose: bool = False


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Where artifacts and run records live on disk.

    Attributes
    ----------
    artifact_dir : str, default=".stageflow/artifacts"
        Root of the local content-addressed artifact store
    run_dir : str, default=".stageflow/runs"
        Directory of the JSON run store
    """

    artifact_dir: str = ".stageflow/artifacts"
    run_dir: str = ".stageflow/runs"


@dataclass(slots=True)
class StageflowConfig:
    """Complete stageflow configuration.

    Examples
    --------
    TOML configuration in pyproject.toml:

    ```toml
    [tool.stageflow.logging]
    level = "DEBUG"

    [tool.stageflow.orchestrator]
    max_concurrency = 2
    default_stage_timeout = 900
    skip_policy = "propagate"

    [tool.stageflow.storage]
    artifact_dir = "build/artifacts"
    ```
    """

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    secret_prefix: str = ""
    settings: dict[str, Any] = field(default_factory=dict)
