"""Artifact store drivers."""

from stageflow.drivers.artifact_store.local import LocalArtifactStore
from stageflow.drivers.artifact_store.memory import InMemoryArtifactStore

__all__ = ["InMemoryArtifactStore", "LocalArtifactStore"]
