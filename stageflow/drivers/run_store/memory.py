"""In-memory run store."""

from typing import Any

from stageflow.kernel.domain.run import PipelineRun
from stageflow.kernel.exceptions import ResourceNotFoundError

__all__ = ["InMemoryRunStore"]


class InMemoryRunStore:
    """Keeps serialized snapshots of runs in a dict.

    Runs are stored as JSON snapshots rather than live objects so that a
    loaded run never aliases the controller's working copy.
    """

    def __init__(self, **kwargs: Any) -> None:
        self._runs: dict[str, str] = {}

    async def asave(self, run: PipelineRun) -> None:
        self._runs[run.run_id] = run.model_dump_json()

    async def aload(self, run_id: str) -> PipelineRun:
        try:
            return PipelineRun.model_validate_json(self._runs[run_id])
        except KeyError:
            raise ResourceNotFoundError("run", run_id, list(self._runs)) from None

    async def alist(self, pipeline_name: str | None = None) -> list[PipelineRun]:
        runs = [PipelineRun.model_validate_json(doc) for doc in self._runs.values()]
        if pipeline_name is not None:
            runs = [r for r in runs if r.pipeline_name == pipeline_name]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._runs)
