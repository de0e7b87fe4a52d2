"""Artifact records for the content-addressed artifact store.

An artifact is an immutable blob identified by the sha256 digest of its
content. Stage runs hold digests, never copies of the data.
"""

from __future__ import annotations

import hashlib
import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ArtifactKind(StrEnum):
    """What an artifact blob holds."""

    OUTPUT = "output"
    LOG = "log"


def compute_digest(data: bytes) -> str:
    """Return the sha256 hex digest used as the artifact address."""
    return hashlib.sha256(data).hexdigest()


def make_ref(run_id: str | None, producer: str, name: str) -> str:
    """Build the reference under which an artifact record is indexed."""
    return f"{run_id or '-'}/{producer}/{name}"


class Artifact(BaseModel):
    """Metadata for one stored blob.

    Attributes
    ----------
    name : str
        Declared artifact name (e.g. ``"jar"``) or log name
    digest : str
        sha256 hex digest of the content
    size : int
        Content length in bytes
    producer : str
        Name of the stage that produced it
    run_id : str | None
        Run the artifact belongs to
    kind : ArtifactKind
        Declared output or captured log
    consumers : tuple[str, ...]
        Stages that bound this artifact as an input
    """

    model_config = ConfigDict(frozen=True)

    name: str
    digest: str
    size: int
    producer: str
    run_id: str | None = None
    kind: ArtifactKind = ArtifactKind.OUTPUT
    consumers: tuple[str, ...] = ()
    created_at: float = Field(default_factory=time.time)

    @property
    def ref(self) -> str:
        """Stable reference held by stage runs: ``run/producer/name``."""
        return make_ref(self.run_id, self.producer, self.name)

    def with_consumer(self, stage: str) -> Artifact:
        """Return a copy that lists *stage* as a consumer."""
        if stage in self.consumers:
            return self
        return self.model_copy(update={"consumers": (*self.consumers, stage)})
