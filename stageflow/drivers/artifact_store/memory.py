"""In-memory artifact store, used by tests and single-process runs."""

from __future__ import annotations

from typing import Any

from stageflow.kernel.domain.artifact import Artifact, ArtifactKind, compute_digest, make_ref
from stageflow.kernel.exceptions import ResourceNotFoundError
from stageflow.kernel.logging import get_logger

__all__ = ["InMemoryArtifactStore"]

logger = get_logger(__name__)


class InMemoryArtifactStore:
    """Content-addressed artifact store backed by two dictionaries.

    ``blobs`` maps digest -> content and ``records`` maps reference ->
    Artifact. Both are append-only from the engine's point of view.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.blobs: dict[str, bytes] = {}
        self.records: dict[str, Artifact] = {}

    async def aput(
        self,
        data: bytes,
        *,
        name: str,
        producer: str,
        run_id: str | None = None,
        kind: ArtifactKind | None = None,
    ) -> Artifact:
        digest = compute_digest(data)
        self.blobs.setdefault(digest, bytes(data))

        artifact = Artifact(
            name=name,
            digest=digest,
            size=len(data),
            producer=producer,
            run_id=run_id,
            kind=kind or ArtifactKind.OUTPUT,
        )
        self.records[artifact.ref] = artifact
        logger.debug("Stored artifact {} ({} bytes, {})", artifact.ref, artifact.size, digest[:12])
        return artifact

    async def aget(self, ref: str) -> Artifact:
        try:
            return self.records[ref]
        except KeyError:
            raise ResourceNotFoundError("artifact", ref, sorted(self.records)) from None

    async def aread(self, digest: str) -> bytes:
        try:
            return self.blobs[digest]
        except KeyError:
            raise ResourceNotFoundError("blob", digest) from None

    async def arecord_consumer(self, ref: str, stage: str) -> Artifact:
        artifact = (await self.aget(ref)).with_consumer(stage)
        self.records[ref] = artifact
        return artifact

    async def alist(self, run_id: str | None = None) -> list[Artifact]:
        if run_id is None:
            return list(self.records.values())
        prefix = make_ref(run_id, "", "").rstrip("/")
        return [a for ref, a in self.records.items() if ref.startswith(prefix + "/")]

    def __len__(self) -> int:
        return len(self.records)
