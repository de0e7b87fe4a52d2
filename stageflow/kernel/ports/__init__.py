"""Port interfaces for stageflow."""

from stageflow.kernel.ports.action import ActionAdapter, ActionInvocation, ActionOutcome
from stageflow.kernel.ports.artifact_store import ArtifactStore
from stageflow.kernel.ports.observer_manager import Observer, ObserverManager
from stageflow.kernel.ports.run_store import RunStore
from stageflow.kernel.ports.secret import SecretResolver

__all__ = [
    "ActionAdapter",
    "ActionInvocation",
    "ActionOutcome",
    "ArtifactStore",
    "Observer",
    "ObserverManager",
    "RunStore",
    "SecretResolver",
]
