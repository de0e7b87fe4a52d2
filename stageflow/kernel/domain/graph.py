"""Dependency graph of pipeline stages.

The graph holds stage structure (prerequisite edges) and evaluates
readiness for a given PipelineRun. It owns no run state itself: the
StageRun records inside the run are mutated only when the scheduler's
control loop calls ``ready_stages`` or ``skip_remaining``.
"""

from collections import defaultdict
from collections.abc import Iterator, Mapping
from enum import Enum, StrEnum, auto

from stageflow.kernel.domain.context import RunContext
from stageflow.kernel.domain.pipeline import StageDefinition
from stageflow.kernel.domain.run import PipelineRun, StageRun, StageStatus
from stageflow.kernel.exceptions import (
    CycleError,
    DuplicateNameError,
    MissingDependencyError,
    ValidationError,
)


class Color(Enum):
    """Colors for DFS cycle detection."""

    WHITE = auto()  # Unvisited
    GRAY = auto()  # On the current DFS path
    BLACK = auto()  # Fully explored


class SkipPolicy(StrEnum):
    """How a Skipped prerequisite affects its dependents.

    PROPAGATE
        Dependents of a Skipped stage are Skipped as well.
    SATISFY
        A Skipped prerequisite counts as satisfied; the dependent may run.
    """

    PROPAGATE = "propagate"
    SATISFY = "satisfy"


class DependencyGraph:
    """A directed acyclic graph of StageDefinitions.

    Provides:
    - stage registration with duplicate and cycle detection
    - deferred validation of forward references and artifact wiring
    - topological layering into waves
    - per-run readiness evaluation with condition gates and skip propagation
    """

    def __init__(
        self,
        stages: list[StageDefinition] | None = None,
        skip_policy: SkipPolicy = SkipPolicy.PROPAGATE,
    ) -> None:
        self.stages: dict[str, StageDefinition] = {}
        self.skip_policy = skip_policy
        self._forward_edges: defaultdict[str, set[str]] = defaultdict(set)  # stage -> dependents
        self._reverse_edges: defaultdict[str, set[str]] = defaultdict(set)  # stage -> needs
        self._order_cache: list[str] | None = None

        if stages:
            self.add_many(*stages)

    @staticmethod
    def detect_cycle(graph: Mapping[str, set[str] | frozenset[str] | tuple[str, ...]]) -> list[str] | None:
        """Detect a cycle in a dependency mapping using three-color DFS.

        Parameters
        ----------
        graph : Mapping[str, Collection[str]]
            Stage name -> names it depends on

        Returns
        -------
        list[str] | None
            The cycle path (first element repeated at the end), or None

        Examples
        --------
        >>> DependencyGraph.detect_cycle({"a": {"b"}, "b": {"c"}, "c": {"a"}})
        ['a', 'b', 'c', 'a']
        >>> DependencyGraph.detect_cycle({"a": {"b"}, "b": set()}) is None
        True
        """
        colors = dict.fromkeys(graph, Color.WHITE)

        def dfs(node: str, path: list[str]) -> list[str] | None:
            if colors[node] == Color.GRAY:
                return path[path.index(node) :] + [node]
            if colors[node] == Color.BLACK:
                return None

            colors[node] = Color.GRAY
            path.append(node)
            for dep in sorted(graph.get(node, ())):
                if dep in colors and (cycle := dfs(dep, path)):
                    return cycle
            path.pop()
            colors[node] = Color.BLACK
            return None

        for node in graph:
            if colors[node] == Color.WHITE and (cycle := dfs(node, [])):
                return cycle
        return None

    def add_stage(self, stage: StageDefinition) -> "DependencyGraph":
        """Register a stage.

        Prerequisites may name stages that are added later; they are checked
        by ``validate()``. Cycles are rejected as soon as they close.

        Raises
        ------
        DuplicateNameError
            If a stage with the same name exists.
        CycleError
            If the stage's prerequisite edges would create a cycle.
        """
        if stage.name in self.stages:
            raise DuplicateNameError(stage.name)

        dependencies = {name: set(self._reverse_edges[name]) for name in self.stages}
        dependencies[stage.name] = set(stage.needs)
        if cycle := self.detect_cycle(dependencies):
            raise CycleError(cycle)

        self.stages[stage.name] = stage
        for dep in stage.needs:
            self._reverse_edges[stage.name].add(dep)
            self._forward_edges[dep].add(stage.name)
        self._order_cache = None
        return self

    def add_many(self, *stages: StageDefinition) -> "DependencyGraph":
        for stage in stages:
            self.add_stage(stage)
        return self

    def validate(self) -> None:
        """Validate references that could not be checked at add time.

        Raises
        ------
        MissingDependencyError
            If a stage needs a stage that was never added.
        ValidationError
            If an output name is declared twice, or a declared input is not
            produced by any ancestor of the consuming stage.
        """
        for name, stage in self.stages.items():
            missing = [dep for dep in stage.needs if dep not in self.stages]
            if missing:
                raise MissingDependencyError(name, missing)

        producers: dict[str, str] = {}
        for name, stage in self.stages.items():
            for output in stage.outputs:
                if output in producers:
                    raise ValidationError(
                        f"{name}.outputs",
                        f"artifact '{output}' is already produced by '{producers[output]}'",
                    )
                producers[output] = name

        for name, stage in self.stages.items():
            ancestors = self.ancestors(name)
            for artifact in stage.inputs:
                producer = producers.get(artifact)
                if producer is None:
                    raise ValidationError(
                        f"{name}.inputs", f"no stage produces artifact '{artifact}'"
                    )
                if producer not in ancestors:
                    raise ValidationError(
                        f"{name}.inputs",
                        f"artifact '{artifact}' comes from '{producer}', which is not a prerequisite",
                    )

    def ancestors(self, name: str) -> set[str]:
        """All stages *name* transitively depends on."""
        seen: set[str] = set()
        stack = list(self._reverse_edges.get(name, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._reverse_edges.get(current, ()))
        return seen

    def dependents(self, name: str) -> set[str]:
        """Stages that directly need *name*."""
        return set(self._forward_edges.get(name, ()))

    def producer_of(self, artifact: str) -> str | None:
        for name, stage in self.stages.items():
            if artifact in stage.outputs:
                return name
        return None

    def waves(self) -> list[list[str]]:
        """Group stages into waves of mutually independent stages.

        Wave *n* holds every stage whose prerequisites all sit in earlier
        waves. Within a wave, declaration order is kept.
        """
        in_degree = {name: len(self._reverse_edges[name] & self.stages.keys()) for name in self.stages}
        waves: list[list[str]] = []
        current = [name for name, degree in in_degree.items() if degree == 0]
        while current:
            waves.append(current)
            next_wave: list[str] = []
            for name in current:
                for dependent in self._forward_edges.get(name, ()):
                    if dependent not in in_degree:
                        continue
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            order = list(self.stages)
            current = sorted(next_wave, key=order.index)
        return waves

    def topological_order(self) -> list[str]:
        if self._order_cache is None:
            self._order_cache = [name for wave in self.waves() for name in wave]
        return list(self._order_cache)

    # ------------------------------------------------------------------
    # Per-run evaluation
    # ------------------------------------------------------------------

    def new_stage_runs(self) -> dict[str, StageRun]:
        """Fresh Pending StageRun records, in declaration order."""
        return {
            name: StageRun(name=name, optional=stage.optional, retries_remaining=stage.retries)
            for name, stage in self.stages.items()
        }

    def _blocking_prerequisites(self, run: PipelineRun, stage: StageDefinition) -> list[str] | None:
        """Prerequisites that make *stage* unsatisfiable.

        Returns None while some prerequisite is not yet terminal.
        """
        blocking: list[str] = []
        for dep in stage.needs:
            status = run.stages[dep].status
            if not status.is_terminal:
                return None
            if status == StageStatus.FAILED:
                blocking.append(dep)
            elif status == StageStatus.SKIPPED and self.skip_policy == SkipPolicy.PROPAGATE:
                blocking.append(dep)
        return blocking

    def ready_stages(self, run: PipelineRun, context: RunContext) -> list[str]:
        """Advance Pending stages and return the names of Ready stages.

        A Pending stage whose prerequisites are all terminal becomes:
        - Skipped, if a prerequisite Failed (or was Skipped under
          ``SkipPolicy.PROPAGATE``)
        - Skipped, if its run condition evaluates false
        - Ready otherwise

        Stages are visited in topological order so skipping propagates
        transitively within a single call. Stages already Ready (queued
        retries) are included in the result.
        """
        for name in self.topological_order():
            stage_run = run.stages[name]
            if stage_run.status != StageStatus.PENDING:
                continue
            stage = self.stages[name]

            blocking = self._blocking_prerequisites(run, stage)
            if blocking is None:
                continue
            if blocking:
                stage_run.skip(f"prerequisite(s) not satisfied: {', '.join(blocking)}")
                continue

            if not stage.condition_holds(context.expression_data(run.stage_statuses())):
                stage_run.skip(f"condition '{stage.when}' evaluated to false")
                continue

            stage_run.mark_ready()

        return run.in_status(StageStatus.READY)

    def is_terminal(self, run: PipelineRun) -> bool:
        """True when every stage is Succeeded, Failed or Skipped."""
        return all(run.stages[name].is_terminal for name in self.stages)

    def skip_remaining(self, run: PipelineRun, reason: str) -> list[str]:
        """Skip every Pending or Ready stage; return the names skipped."""
        skipped = run.in_status(StageStatus.PENDING, StageStatus.READY)
        for name in skipped:
            run.stages[name].skip(reason)
        return skipped

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, name: object) -> bool:
        return name in self.stages

    def __iter__(self) -> Iterator[str]:
        return iter(self.stages)

    def __getitem__(self, name: str) -> StageDefinition:
        return self.stages[name]

    def __repr__(self) -> str:
        return f"DependencyGraph(stages={list(self.stages)}, skip_policy={self.skip_policy.value})"
