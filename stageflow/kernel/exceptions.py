"""Core exception hierarchy for stageflow.

All stageflow exceptions inherit from StageflowError so callers can catch
every framework error with a single clause. The hierarchy is split by the
moment the error can happen:

- definition time: the pipeline is rejected before anything executes
- stage execution time: recorded on the StageRun and subject to retry
- run level: abort, never retried
- orchestrator fatal: invariant violations inside the control loop
"""

from __future__ import annotations

# ============================================================================
# Base Exception
# ============================================================================


class StageflowError(Exception):
    """Base exception for all stageflow errors."""

    pass


# ============================================================================
# Configuration & Definition Errors
# ============================================================================


class ConfigurationError(StageflowError):
    """Raised when configuration is invalid or missing.

    Examples
    --------
    Example usage::

        raise ConfigurationError("orchestrator", "max_concurrency must be >= 1")
    """

    def __init__(self, component: str, reason: str) -> None:
        super().__init__(f"Configuration error in '{component}': {reason}")
        self.component = component
        self.reason = reason


class ValidationError(StageflowError):
    """Raised when a definition or manifest field fails validation.

    Examples
    --------
    Example usage::

        raise ValidationError("stages[2].retries", "must be >= 0", value=-1)
    """

    def __init__(self, field: str, constraint: str, value: object = None) -> None:
        if value is not None:
            msg = f"Validation failed for '{field}': {constraint} (got {value!r})"
        else:
            msg = f"Validation failed for '{field}': {constraint}"
        super().__init__(msg)
        self.field = field
        self.constraint = constraint
        self.value = value


class GraphError(StageflowError):
    """Base exception for dependency graph errors."""

    pass


class CycleError(GraphError):
    """Raised when prerequisite edges would form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class DuplicateNameError(GraphError):
    """Raised when a stage name is registered twice."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Stage '{name}' already exists")
        self.name = name


class MissingDependencyError(GraphError):
    """Raised when a stage needs a stage that was never defined."""

    def __init__(self, stage: str, missing: list[str]) -> None:
        super().__init__(f"Stage '{stage}' needs undefined stage(s): {', '.join(missing)}")
        self.stage = stage
        self.missing = missing


# ============================================================================
# Stage Execution Errors
# ============================================================================


class StageExecutionError(StageflowError):
    """Base for failures that happen while executing a single stage.

    These never escape the scheduler loop: the runner records them on the
    StageRun and the controller decides whether to retry.
    """

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {reason}")
        self.stage = stage
        self.reason = reason


class NonZeroExitError(StageExecutionError):
    """The stage action exited with a non-zero status."""

    def __init__(self, stage: str, exit_code: int) -> None:
        super().__init__(stage, f"exit status {exit_code}")
        self.exit_code = exit_code


class MissingArtifactError(StageExecutionError):
    """A declared artifact was not available.

    Raised for a declared output the action did not produce (even on a zero
    exit) and for a declared input that cannot be bound.
    """

    def __init__(self, stage: str, artifacts: list[str], direction: str = "output") -> None:
        super().__init__(stage, f"missing {direction} artifact(s): {', '.join(artifacts)}")
        self.artifacts = artifacts
        self.direction = direction


class StageTimeoutError(StageExecutionError, TimeoutError):
    """The stage action exceeded its timeout and was cancelled."""

    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(stage, f"timed out after {timeout:g}s")
        self.timeout = timeout


class SecretResolutionError(StageExecutionError):
    """A secret handle could not be resolved at bind time."""

    def __init__(self, stage: str, secret: str, reason: str) -> None:
        super().__init__(stage, f"cannot resolve secret '{secret}': {reason}")
        self.secret = secret


class ActionError(StageExecutionError):
    """The action adapter itself crashed or the action reference is unusable."""

    pass


# ============================================================================
# Run-level & Orchestration Errors
# ============================================================================


class AbortedError(StageflowError):
    """The run was aborted by an external request. Never retried."""

    def __init__(self, run_id: str, reason: str = "aborted") -> None:
        super().__init__(f"Run '{run_id}' aborted: {reason}")
        self.run_id = run_id
        self.reason = reason


class OrchestratorError(StageflowError):
    """Raised when the orchestrator detects a broken invariant.

    Examples
    --------
    Example usage::

        raise OrchestratorError("Graph reported terminal with stages still pending")
    """

    pass


class InvalidTransitionError(OrchestratorError):
    """Raised on a status change the state machine does not allow."""

    def __init__(self, entity: str, from_state: str, to_state: str) -> None:
        super().__init__(f"Invalid transition for {entity}: {from_state} -> {to_state}")
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state


class ResourceNotFoundError(StageflowError):
    """Raised when a run, artifact or pipeline cannot be found."""

    def __init__(
        self, resource_type: str, resource_id: str, available: list[str] | None = None
    ) -> None:
        msg = f"{resource_type.title()} '{resource_id}' not found"
        if available:
            msg += f". Available: {', '.join(available[:5])}"
            if len(available) > 5:
                msg += f" ... and {len(available) - 5} more"
        super().__init__(msg)
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.available = available


__all__ = [
    "StageflowError",
    "ConfigurationError",
    "ValidationError",
    "GraphError",
    "CycleError",
    "DuplicateNameError",
    "MissingDependencyError",
    "StageExecutionError",
    "NonZeroExitError",
    "MissingArtifactError",
    "StageTimeoutError",
    "SecretResolutionError",
    "ActionError",
    "AbortedError",
    "OrchestratorError",
    "InvalidTransitionError",
    "ResourceNotFoundError",
]
