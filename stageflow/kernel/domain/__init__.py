"""Domain layer exports for stageflow."""

from stageflow.kernel.domain.artifact import Artifact, ArtifactKind, compute_digest, make_ref
from stageflow.kernel.domain.context import RunContext, Trigger
from stageflow.kernel.domain.graph import DependencyGraph, SkipPolicy
from stageflow.kernel.domain.pipeline import PipelineDefinition, StageDefinition
from stageflow.kernel.domain.run import (
    AttemptRecord,
    PipelineRun,
    RunStatus,
    StageResult,
    StageRun,
    StageStatus,
)

__all__ = [
    # Artifacts
    "Artifact",
    "ArtifactKind",
    "compute_digest",
    "make_ref",
    # Context
    "RunContext",
    "Trigger",
    # Graph
    "DependencyGraph",
    "SkipPolicy",
    # Definitions
    "PipelineDefinition",
    "StageDefinition",
    # Run records
    "AttemptRecord",
    "PipelineRun",
    "RunStatus",
    "StageResult",
    "StageRun",
    "StageStatus",
]
