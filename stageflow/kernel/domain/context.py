"""Trigger events and the run context visible to conditions and actions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from stageflow.kernel.types import SecretRef

_HEADS_PREFIX = "refs/heads/"
_TAGS_PREFIX = "refs/tags/"


class Trigger(BaseModel):
    """Event record that starts a pipeline run.

    Produced by an external webhook receiver or poller, e.g. a push of
    ``refs/heads/main`` at a given commit.

    Examples
    --------
    >>> t = Trigger(ref="refs/heads/main", commit_sha="abc123", actor="dev")
    >>> t.branch
    'main'
    >>> Trigger(ref="refs/tags/v1.0", commit_sha="abc", actor="ci").tag
    'v1.0'
    """

    model_config = ConfigDict(frozen=True)

    ref: str
    commit_sha: str
    actor: str
    event_type: str = Field(default="push")

    @property
    def branch(self) -> str | None:
        """Branch name for ``refs/heads/*`` refs; bare names pass through."""
        if self.ref.startswith(_HEADS_PREFIX):
            return self.ref[len(_HEADS_PREFIX) :]
        if self.ref.startswith("refs/"):
            return None
        return self.ref

    @property
    def tag(self) -> str | None:
        """Tag name for ``refs/tags/*`` refs."""
        if self.ref.startswith(_TAGS_PREFIX):
            return self.ref[len(_TAGS_PREFIX) :]
        return None


@dataclass(frozen=True, slots=True)
class RunContext:
    """Key-value environment of one run.

    Holds the trigger, pipeline variables and secret *handles*. Secret
    values are never stored here; stages resolve handles at bind time.
    """

    trigger: Trigger
    variables: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, SecretRef] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "secrets", MappingProxyType(dict(self.secrets)))

    def expression_data(self, stage_statuses: Mapping[str, str] | None = None) -> dict[str, Any]:
        """Data visible to ``when`` conditions.

        Secret handles are deliberately absent.
        """
        return {
            "branch": self.trigger.branch,
            "tag": self.trigger.tag,
            "ref": self.trigger.ref,
            "commit_sha": self.trigger.commit_sha,
            "sha": self.trigger.commit_sha,
            "actor": self.trigger.actor,
            "event_type": self.trigger.event_type,
            "vars": dict(self.variables),
            "stages": dict(stage_statuses or {}),
        }

    def environment(self) -> dict[str, str]:
        """Environment variables exported to every stage action."""
        env = {
            "STAGEFLOW_REF": self.trigger.ref,
            "STAGEFLOW_COMMIT_SHA": self.trigger.commit_sha,
            "STAGEFLOW_ACTOR": self.trigger.actor,
            "STAGEFLOW_EVENT_TYPE": self.trigger.event_type,
        }
        if (branch := self.trigger.branch) is not None:
            env["STAGEFLOW_BRANCH"] = branch
        if (tag := self.trigger.tag) is not None:
            env["STAGEFLOW_TAG"] = tag
        env.update(self.variables)
        return env
