"""Pipeline definition primitives: StageDefinition and PipelineDefinition."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from stageflow.kernel.exceptions import ValidationError
from stageflow.kernel.expression_parser import ExpressionError, Predicate, compile_expression

if TYPE_CHECKING:
    from stageflow.kernel.domain.graph import DependencyGraph, SkipPolicy


def _as_names(values: Iterable[str] | str | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (sys.intern(values),)
    # dict.fromkeys keeps order and drops duplicates
    return tuple(dict.fromkeys(sys.intern(v) for v in values))


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """Immutable definition of one pipeline stage.

    A StageDefinition declares:
    - a unique name within the pipeline
    - the action reference (``scheme:target``, e.g. ``"shell: mvn package"``)
    - prerequisite stages (``needs``)
    - an optional run condition (``when``) evaluated against the RunContext
    - declared input and output artifact names
    - retry budget, timeout and whether failure is tolerated (``optional``)

    Supports fluent chaining via ``.after()``::

        compile = StageDefinition("compile", "shell: mvn package", outputs=["jar"])
        test = StageDefinition("test", "shell: mvn test", inputs=["jar"]).after("compile")
    """

    name: str
    action: str
    needs: tuple[str, ...] = ()
    when: str | None = None
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    retries: int = 0
    timeout: float | None = None
    optional: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: tuple[str, ...] = ()
    _predicate: Predicate | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Normalize collections, validate fields and compile the condition."""
        if not self.name or not self.name.strip():
            raise ValidationError("name", "stage name cannot be empty")
        if not self.action or not self.action.strip():
            raise ValidationError(f"{self.name}.action", "action reference cannot be empty")
        if self.retries < 0:
            raise ValidationError(f"{self.name}.retries", "must be >= 0", self.retries)
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"{self.name}.timeout", "must be > 0", self.timeout)

        object.__setattr__(self, "name", sys.intern(self.name))
        object.__setattr__(self, "needs", _as_names(self.needs))
        object.__setattr__(self, "inputs", _as_names(self.inputs))
        object.__setattr__(self, "outputs", _as_names(self.outputs))
        object.__setattr__(self, "secrets", _as_names(self.secrets))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

        if self.when is not None:
            try:
                object.__setattr__(self, "_predicate", compile_expression(self.when))
            except ExpressionError as e:
                raise ValidationError(f"{self.name}.when", e.reason, self.when) from e

    @property
    def scheme(self) -> str:
        """Action scheme, the part before the first ``:``."""
        scheme, sep, _ = self.action.partition(":")
        return scheme.strip() if sep else ""

    @property
    def target(self) -> str:
        """Action target, the part after the first ``:``."""
        _, _, target = self.action.partition(":")
        return target.strip()

    def condition_holds(self, data: Mapping[str, Any]) -> bool:
        """Evaluate the run condition; stages without one always run."""
        if self._predicate is None:
            return True
        return self._predicate(data)

    def after(self, *stage_names: str) -> StageDefinition:
        """Return a copy that also needs the given stages."""
        return replace(self, needs=(*self.needs, *stage_names))

    def __repr__(self) -> str:
        needs_str = f", needs={list(self.needs)}" if self.needs else ""
        when_str = f", when={self.when!r}" if self.when else ""
        return f"StageDefinition('{self.name}', {self.action!r}{needs_str}{when_str})"


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Ordered set of stage definitions plus pipeline-wide context.

    Construction validates the whole definition: stage names are unique,
    prerequisites exist and are acyclic, and every declared input is the
    output of an ancestor stage. Invalid definitions never reach a run.

    Attributes
    ----------
    name : str
        Pipeline name
    stages : tuple[StageDefinition, ...]
        Stages in declaration order
    variables : Mapping[str, str]
        Variables exported to conditions (``vars.X``) and actions
    secrets : Mapping[str, str]
        Secret handle name -> secret key in the external secret store
    """

    name: str
    stages: tuple[StageDefinition, ...]
    variables: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("pipeline.name", "cannot be empty")
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "secrets", MappingProxyType(dict(self.secrets)))
        if not self.stages:
            raise ValidationError("pipeline.stages", "a pipeline needs at least one stage")

        for stage in self.stages:
            unknown = [s for s in stage.secrets if s not in self.secrets]
            if unknown:
                raise ValidationError(
                    f"{stage.name}.secrets", f"undeclared secret handle(s): {', '.join(unknown)}"
                )

        # Raises CycleError / DuplicateNameError / MissingDependencyError
        self.build_graph()

    def build_graph(self, skip_policy: SkipPolicy | None = None) -> DependencyGraph:
        """Build and validate a fresh dependency graph for this pipeline."""
        from stageflow.kernel.domain.graph import (  # noqa: PLC0415  # lazy: graph imports this module
            DependencyGraph,
            SkipPolicy,
        )

        graph = DependencyGraph(skip_policy=skip_policy or SkipPolicy.PROPAGATE)
        graph.add_many(*self.stages)
        graph.validate()
        return graph

    def __getitem__(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]
