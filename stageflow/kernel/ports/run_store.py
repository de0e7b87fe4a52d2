"""Port interface for persisting pipeline runs."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stageflow.kernel.domain.run import PipelineRun


@runtime_checkable
class RunStore(Protocol):
    """Durable storage for PipelineRun records.

    The controller saves a run after every state transition so that a
    restarted orchestrator can resume it.
    """

    @abstractmethod
    async def asave(self, run: PipelineRun) -> None:
        """Persist the current state of a run, replacing any earlier copy."""
        ...

    @abstractmethod
    async def aload(self, run_id: str) -> PipelineRun:
        """Load a run.

        Raises
        ------
        ResourceNotFoundError
            If the run is unknown
        """
        ...

    @abstractmethod
    async def alist(self, pipeline_name: str | None = None) -> list[PipelineRun]:
        """List stored runs, newest first."""
        ...
