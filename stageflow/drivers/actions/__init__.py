"""Action adapters, keyed by action reference scheme."""

from stageflow.drivers.actions.callable_action import CallableAction
from stageflow.drivers.actions.subprocess_action import SubprocessAction

__all__ = ["CallableAction", "SubprocessAction"]
