"""Observer manager drivers."""

from stageflow.drivers.observer_manager.local import LocalObserverManager

__all__ = ["LocalObserverManager"]
