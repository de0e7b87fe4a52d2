"""Port interface for the content-addressed artifact store."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stageflow.kernel.domain.artifact import Artifact, ArtifactKind


@runtime_checkable
class ArtifactStore(Protocol):
    """Append-only storage for build outputs and logs.

    Blobs are addressed by the sha256 digest of their content and never
    change once written. Metadata records are indexed by reference
    (``run/producer/name``, see ``Artifact.ref``). Concurrent reads are safe;
    writes happen from the scheduler's event loop only.
    """

    @abstractmethod
    async def aput(
        self,
        data: bytes,
        *,
        name: str,
        producer: str,
        run_id: str | None = None,
        kind: ArtifactKind | None = None,
    ) -> Artifact:
        """Store a blob and its metadata record.

        Storing identical content twice keeps a single blob.

        Returns
        -------
        Artifact
            The metadata record; ``artifact.ref`` is what stage runs hold
        """
        ...

    @abstractmethod
    async def aget(self, ref: str) -> Artifact:
        """Return the metadata record for a reference.

        Raises
        ------
        ResourceNotFoundError
            If no artifact is indexed under ``ref``
        """
        ...

    @abstractmethod
    async def aread(self, digest: str) -> bytes:
        """Return blob content by digest.

        Raises
        ------
        ResourceNotFoundError
            If no blob has that digest
        """
        ...

    @abstractmethod
    async def arecord_consumer(self, ref: str, stage: str) -> Artifact:
        """Register *stage* as a consumer of the artifact at *ref*."""
        ...

    @abstractmethod
    async def alist(self, run_id: str | None = None) -> list[Artifact]:
        """List artifact records, optionally restricted to one run."""
        ...
