"""JSON file run store: one document per run."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pydantic import ValidationError as PydanticValidationError

from stageflow.kernel.domain.run import PipelineRun
from stageflow.kernel.exceptions import ResourceNotFoundError, ValidationError
from stageflow.kernel.logging import get_logger

__all__ = ["JsonFileRunStore"]

logger = get_logger(__name__)


class JsonFileRunStore:
    """Persists each PipelineRun as ``<directory>/<run_id>.json``.

    Saves are atomic (write to a temporary file, then rename), so a crash
    mid-save leaves the previous snapshot intact for ``resume``.

    Examples
    --------
    Example usage::

        store = JsonFileRunStore(".stageflow/runs")
        await store.asave(run)
        run = await store.aload(run.run_id)
    """

    def __init__(self, directory: str | Path, **kwargs: Any) -> None:
        self.directory = Path(directory)

    def _path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id in {".", ".."}:
            raise ValidationError("run_id", "must be a plain file name", run_id)
        return self.directory / f"{run_id}.json"

    async def asave(self, run: PipelineRun) -> None:
        path = self._path(run.run_id)
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(run.model_dump_json(indent=2))
        await aiofiles.os.replace(tmp, path)

    async def aload(self, run_id: str) -> PipelineRun:
        path = self._path(run_id)
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            raise ResourceNotFoundError("run", run_id, self._known_ids()) from None
        return PipelineRun.model_validate_json(content)

    async def alist(self, pipeline_name: str | None = None) -> list[PipelineRun]:
        if not self.directory.exists():
            return []
        runs: list[PipelineRun] = []
        for path in self.directory.glob("*.json"):
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            try:
                run = PipelineRun.model_validate_json(content)
            except PydanticValidationError as e:
                logger.warning("Skipping unreadable run file {}: {}", path, e.error_count())
                continue
            if pipeline_name is None or run.pipeline_name == pipeline_name:
                runs.append(run)
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def _known_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))
