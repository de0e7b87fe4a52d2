"""Compilers for stageflow manifests and configuration files."""

from stageflow.compiler.config_loader import (
    ConfigLoader,
    clear_config_cache,
    get_default_config,
    load_config,
    substitute_env_vars,
)
from stageflow.compiler.pipeline_loader import PipelineLoader, load_pipeline

__all__ = [
    "ConfigLoader",
    "PipelineLoader",
    "clear_config_cache",
    "get_default_config",
    "load_config",
    "load_pipeline",
    "substitute_env_vars",
]
