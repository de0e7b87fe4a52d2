"""Orchestrator configuration model."""

from __future__ import annotations

from dataclasses import dataclass

from stageflow.kernel.domain.graph import SkipPolicy
from stageflow.kernel.exceptions import ValidationError


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Configuration for pipeline execution.

    Attributes
    ----------
    max_concurrency : int, default=4
        Maximum number of stages Running at once within one run.
    default_stage_timeout : float | None, default=None
        Timeout in seconds for stages that declare none. None means no timeout.
    skip_policy : SkipPolicy, default=SkipPolicy.PROPAGATE
        Whether a Skipped prerequisite skips its dependents or satisfies them.
    cancel_on_failure : bool, default=False
        When a required stage fails for good, cancel in-flight stages
        instead of letting them drain.
    cancel_grace_period : float, default=5.0
        Seconds a shell action gets between terminate and kill.

    Examples
    --------
    Example usage::

        config = OrchestratorConfig(max_concurrency=2, default_stage_timeout=600)
        controller = PipelineController(pipeline, config=config)
    """

    max_concurrency: int = 4
    default_stage_timeout: float | None = None
    skip_policy: SkipPolicy = SkipPolicy.PROPAGATE
    cancel_on_failure: bool = False
    cancel_grace_period: float = 5.0

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_concurrency <= 0:
            raise ValidationError("max_concurrency", "must be positive", self.max_concurrency)
        if self.default_stage_timeout is not None and self.default_stage_timeout <= 0:
            raise ValidationError("default_stage_timeout", "must be positive", self.default_stage_timeout)
        if self.cancel_grace_period < 0:
            raise ValidationError("cancel_grace_period", "must be >= 0", self.cancel_grace_period)
        object.__setattr__(self, "skip_policy", SkipPolicy(self.skip_policy))
