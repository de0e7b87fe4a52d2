"""Filesystem artifact store.

Layout under the root directory::

    blobs/<digest[:2]>/<digest>          immutable content
    records/<run_id>/<producer>/<name>.json  Artifact metadata

Writes go to a temporary file first and are moved into place with an
atomic rename, so readers never observe a partial blob or record.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from stageflow.kernel.domain.artifact import Artifact, ArtifactKind, compute_digest, make_ref
from stageflow.kernel.exceptions import ResourceNotFoundError, ValidationError
from stageflow.kernel.logging import get_logger

__all__ = ["LocalArtifactStore"]

logger = get_logger(__name__)


def _check_component(value: str, field: str) -> str:
    if not value or value in {".", ".."} or "/" in value or "\\" in value:
        raise ValidationError(field, "must be a plain path component", value)
    return value


class LocalArtifactStore:
    """Content-addressed artifact store on the local filesystem.

    Examples
    --------
    Example usage::

        store = LocalArtifactStore(".stageflow/artifacts")
        artifact = await store.aput(b"jar bytes", name="jar", producer="compile", run_id="r1")
        data = await store.aread(artifact.digest)
    """

    def __init__(self, root: str | Path, **kwargs: Any) -> None:
        self.root = Path(root)
        self.blob_dir = self.root / "blobs"
        self.record_dir = self.root / "records"
        # Serializes read-modify-write of a record within this process
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _blob_path(self, digest: str) -> Path:
        return self.blob_dir / digest[:2] / digest

    def _record_path(self, ref: str) -> Path:
        return self.record_dir / f"{ref}.json"

    async def _atomic_write(self, path: Path, data: bytes) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp, path)

    async def aput(
        self,
        data: bytes,
        *,
        name: str,
        producer: str,
        run_id: str | None = None,
        kind: ArtifactKind | None = None,
    ) -> Artifact:
        _check_component(name, "artifact.name")
        _check_component(producer, "artifact.producer")
        if run_id is not None:
            _check_component(run_id, "artifact.run_id")

        digest = compute_digest(data)
        blob_path = self._blob_path(digest)
        if not await aiofiles.os.path.exists(blob_path):
            await self._atomic_write(blob_path, data)

        artifact = Artifact(
            name=name,
            digest=digest,
            size=len(data),
            producer=producer,
            run_id=run_id,
            kind=kind or ArtifactKind.OUTPUT,
        )
        async with self._locks[artifact.ref]:
            await self._atomic_write(self._record_path(artifact.ref), artifact.model_dump_json().encode())
        logger.debug("Stored artifact {} ({} bytes) at {}", artifact.ref, artifact.size, blob_path)
        return artifact

    async def aget(self, ref: str) -> Artifact:
        path = self._record_path(ref)
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except FileNotFoundError:
            raise ResourceNotFoundError("artifact", ref) from None
        return Artifact.model_validate_json(content)

    async def aread(self, digest: str) -> bytes:
        try:
            async with aiofiles.open(self._blob_path(digest), "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise ResourceNotFoundError("blob", digest) from None

    async def arecord_consumer(self, ref: str, stage: str) -> Artifact:
        async with self._locks[ref]:
            current = await self.aget(ref)
            updated = current.with_consumer(stage)
            if updated is not current:
                await self._atomic_write(self._record_path(ref), updated.model_dump_json().encode())
        return updated

    async def alist(self, run_id: str | None = None) -> list[Artifact]:
        base = self.record_dir if run_id is None else self.record_dir / make_ref(run_id, "", "").rstrip("/")
        if not base.exists():
            return []
        artifacts = []
        for path in sorted(base.rglob("*.json")):
            async with aiofiles.open(path) as f:
                artifacts.append(Artifact.model_validate_json(await f.read()))
        return artifacts
