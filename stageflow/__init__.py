"""stageflow - CI/CD pipeline orchestration engine.

Stages with dependencies, run conditions, artifact hand-off, retries and
bounded concurrency, driven by a single asyncio control loop.

Example usage::

    from stageflow import PipelineController, Trigger, load_pipeline

    pipeline = load_pipeline("pipelines/java-ci.yaml")
    run = await PipelineController(pipeline).trigger(
        Trigger(ref="refs/heads/main", commit_sha="3f2a1c0", actor="dev")
    )
"""

from importlib.metadata import PackageNotFoundError, version

from stageflow.compiler.pipeline_loader import PipelineLoader, load_pipeline
from stageflow.kernel.domain import (
    Artifact,
    ArtifactKind,
    DependencyGraph,
    PipelineDefinition,
    PipelineRun,
    RunContext,
    RunStatus,
    SkipPolicy,
    StageDefinition,
    StageResult,
    StageRun,
    StageStatus,
    Trigger,
)
from stageflow.kernel.exceptions import StageflowError
from stageflow.kernel.logging import configure_logging, get_logger
from stageflow.kernel.orchestration import (
    OrchestratorConfig,
    PipelineController,
    Scheduler,
    StageRunner,
)

try:
    __version__ = version("stageflow")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "Artifact",
    "ArtifactKind",
    "DependencyGraph",
    "OrchestratorConfig",
    "PipelineController",
    "PipelineDefinition",
    "PipelineLoader",
    "PipelineRun",
    "RunContext",
    "RunStatus",
    "Scheduler",
    "SkipPolicy",
    "StageDefinition",
    "StageResult",
    "StageRun",
    "StageRunner",
    "StageStatus",
    "StageflowError",
    "Trigger",
    "__version__",
    "configure_logging",
    "get_logger",
    "load_pipeline",
]
