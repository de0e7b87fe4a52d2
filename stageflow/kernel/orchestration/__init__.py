"""Orchestration: stage runner, scheduler and pipeline controller."""

from stageflow.kernel.orchestration.controller import PipelineController
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
from stageflow.kernel.orchestration.scheduler import RunHooks, Scheduler
from stageflow.kernel.orchestration.stage_runner import StageRunner

__all__ = [
    "Event",
    "OrchestratorConfig",
    "PipelineAborted",
    "PipelineCompleted",
    "PipelineController",
    "PipelineStarted",
    "RunHooks",
    "Scheduler",
    "StageCompleted",
    "StageFailed",
    "StageRetrying",
    "StageRunner",
    "StageSkipped",
    "StageStarted",
]
