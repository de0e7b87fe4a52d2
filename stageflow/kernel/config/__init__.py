"""Configuration models."""

from stageflow.kernel.config.models import LoggingConfig, StageflowConfig, StorageConfig
from stageflow.kernel.orchestration.models import OrchestratorConfig

__all__ = ["LoggingConfig", "OrchestratorConfig", "StageflowConfig", "StorageConfig"]
