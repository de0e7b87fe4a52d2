"""Shared fixtures for stageflow tests.

Provides:
- ScriptedAction: an action adapter whose exit codes and outputs are
  scripted per target, and which tracks concurrency
- make_java_ci: the compile -> {scan, test} -> analyze -> dockerize -> deploy
  pipeline, every stage running through ScriptedAction
- trigger helpers for main and feature branches
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable

import pytest

from stageflow.compiler.config_loader import clear_config_cache
from stageflow.kernel.domain import PipelineDefinition, StageDefinition, Trigger
from stageflow.kernel.ports.action import ActionInvocation, ActionOutcome


class ScriptedAction:
    """Action adapter driven by per-target scripts.

    Parameters
    ----------
    exit_codes : dict[str, list[int]]
        Exit codes returned on successive calls of a target; the last one
        repeats. Unlisted targets exit 0.
    outputs : dict[str, list[str]]
        Output names written on a zero exit
    delays : dict[str, float]
        Seconds a target sleeps before finishing
    """

    def __init__(
        self,
        exit_codes: dict[str, list[int]] | None = None,
        outputs: dict[str, list[str]] | None = None,
        delays: dict[str, float] | None = None,
        default_delay: float = 0.0,
    ) -> None:
        self.exit_codes = exit_codes or {}
        self.outputs = outputs or {}
        self.delays = delays or {}
        self.default_delay = default_delay
        self.calls: list[tuple[str, int]] = []
        self.invocations: list[ActionInvocation] = []
        self.call_count: defaultdict[str, int] = defaultdict(int)
        self.running = 0
        self.peak = 0
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.cancelled: list[str] = []

    def called(self, target: str) -> int:
        return self.call_count[target]

    async def ainvoke(self, invocation: ActionInvocation) -> ActionOutcome:
        target = invocation.target
        self.calls.append((target, invocation.attempt))
        self.invocations.append(invocation)
        index = self.call_count[target]
        self.call_count[target] += 1

        self.running += 1
        self.peak = max(self.peak, self.running)
        self.started[target].set()
        try:
            await asyncio.sleep(self.delays.get(target, self.default_delay))
        except asyncio.CancelledError:
            self.cancelled.append(target)
            raise
        finally:
            self.running -= 1

        codes = self.exit_codes.get(target, [0])
        exit_code = codes[min(index, len(codes) - 1)]
        if exit_code == 0:
            for name in self.outputs.get(target, []):
                invocation.write_output(name, f"{name} from {target} attempt {invocation.attempt}")
        return ActionOutcome(exit_code=exit_code, stdout=f"{target} attempt {invocation.attempt}\n")


def stage(name: str, needs: Iterable[str] = (), **kwargs: object) -> StageDefinition:
    """StageDefinition running ``fake: <name>``."""
    return StageDefinition(name=name, action=f"fake: {name}", needs=tuple(needs), **kwargs)  # type: ignore[arg-type]


def java_ci_stages(**overrides: dict[str, object]) -> list[StageDefinition]:
    specs: list[tuple[str, tuple[str, ...], dict[str, object]]] = [
        ("compile", (), {"outputs": ("app.jar",)}),
        ("scan", ("compile",), {}),
        ("test", ("compile",), {"inputs": ("app.jar",), "outputs": ("reports",)}),
        ("analyze", ("scan", "test"), {"inputs": ("reports",)}),
        ("dockerize", ("analyze",), {"inputs": ("app.jar",)}),
        ("deploy", ("dockerize",), {"when": "branch == 'main'"}),
    ]
    return [stage(name, needs, **{**extra, **overrides.get(name, {})}) for name, needs, extra in specs]


@pytest.fixture
def make_java_ci() -> Callable[..., PipelineDefinition]:
    """Factory for the java-ci pipeline with per-stage overrides."""

    def factory(**overrides: dict[str, object]) -> PipelineDefinition:
        return PipelineDefinition(name="java-ci", stages=tuple(java_ci_stages(**overrides)))

    return factory


@pytest.fixture
def java_ci_action() -> ScriptedAction:
    return ScriptedAction(outputs={"compile": ["app.jar"], "test": ["reports"]})


@pytest.fixture
def main_trigger() -> Trigger:
    return Trigger(ref="refs/heads/main", commit_sha="3f2a1c0", actor="dev")


@pytest.fixture
def feature_trigger() -> Trigger:
    return Trigger(ref="refs/heads/feature-x", commit_sha="9b8c7d6", actor="dev")


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep environment overrides and cached config out of every test."""
    for var in (
        "STAGEFLOW_CONFIG_PATH",
        "STAGEFLOW_LOG_LEVEL",
        "STAGEFLOW_LOG_FORMAT",
        "STAGEFLOW_LOG_FILE",
        "STAGEFLOW_LOG_COLOR",
        "STAGEFLOW_MAX_CONCURRENCY",
    ):
        monkeypatch.delenv(var, raising=False)
    clear_config_cache()


@pytest.fixture
def scripted() -> type[ScriptedAction]:
    """The ScriptedAction class, for tests that script their own targets."""
    return ScriptedAction


@pytest.fixture
def make_stage() -> Callable[..., StageDefinition]:
    return stage
