"""Port interface for stage actions.

An action is the opaque unit of work behind a stage: a shell command, a
registered Python callable, or anything else an adapter knows how to run.
The engine only sees an exit status, captured output and the files left
in the invocation's output directory.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stageflow.kernel.types import Secret


@dataclass(slots=True)
class ActionInvocation:
    """Everything an adapter needs to run one stage attempt.

    Attributes
    ----------
    stage : str
        Stage name
    target : str
        Action target (the part of the reference after ``scheme:``)
    workdir : Path
        Private workspace for this attempt; the action's working directory
    inputs : dict[str, Path]
        Declared input name -> materialized file inside ``workdir``
    output_dir : Path
        Directory where declared outputs must be written, one file per name
    env : dict[str, str]
        Run context and stage environment (never contains secrets)
    secrets : dict[str, Secret]
        Resolved secrets by handle name; adapters expose them on demand
    attempt : int
        1-based attempt number
    """

    stage: str
    target: str
    workdir: Path
    output_dir: Path
    inputs: dict[str, Path] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, Secret] = field(default_factory=dict)
    attempt: int = 1

    def output_path(self, name: str) -> Path:
        return self.output_dir / name

    def write_output(self, name: str, data: bytes | str) -> Path:
        """Write a declared output artifact and return its path."""
        path = self.output_path(name)
        if isinstance(data, str):
            data = data.encode()
        path.write_bytes(data)
        return path

    def read_input(self, name: str) -> bytes:
        return self.inputs[name].read_bytes()


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Raw result of an action: exit status and captured output."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def log(self) -> str:
        """Combined stdout/stderr as stored in the log artifact."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n--- stderr ---\n{self.stderr}"
        return self.stdout or self.stderr


@runtime_checkable
class ActionAdapter(Protocol):
    """Port interface for running stage actions.

    Adapters must honour task cancellation: when the awaiting task is
    cancelled (timeout or abort), any external process is terminated
    before ``CancelledError`` propagates.
    """

    @abstractmethod
    async def ainvoke(self, invocation: ActionInvocation) -> ActionOutcome:
        """Run the action and return its outcome.

        Raises
        ------
        ActionError
            If the action cannot be started at all (unknown target, adapter crash)
        """
        ...
