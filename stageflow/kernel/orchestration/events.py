"""Event data classes emitted by the pipeline controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class Event:
    """Base class for all events - provides timestamp."""

    timestamp: datetime = field(default_factory=datetime.now, init=False)

    def log_message(self) -> str:
        """Get a formatted log message for this event.

        Override in subclasses to provide custom formatting.
        """
        return f"{self.__class__.__name__} at {self.timestamp.isoformat()}"


# Pipeline events
@dataclass(slots=True)
class PipelineStarted(Event):
    """A run has left Pending and started dispatching stages."""

    run_id: str
    pipeline: str
    total_stages: int
    ref: str = ""

    def log_message(self) -> str:
        return f"🚀 Pipeline '{self.pipeline}' run {self.run_id} started ({self.total_stages} stages, ref {self.ref})"


@dataclass(slots=True)
class PipelineCompleted(Event):
    """A run reached Succeeded or Failed."""

    run_id: str
    pipeline: str
    status: str
    duration_ms: float | None = None

    def log_message(self) -> str:
        icon = "✅" if self.status == "succeeded" else "❌"
        duration = f" in {self.duration_ms / 1000:.2f}s" if self.duration_ms is not None else ""
        return f"{icon} Pipeline '{self.pipeline}' run {self.run_id} {self.status}{duration}"


@dataclass(slots=True)
class PipelineAborted(Event):
    """A run was aborted by an external request.

    Attributes
    ----------
    run_id : str
        Run identifier
    reason : str
        Reason given by the caller
    cancelled_stages : tuple[str, ...]
        Stages that were in flight and got cancelled
    """

    run_id: str
    pipeline: str
    reason: str
    cancelled_stages: tuple[str, ...] = ()

    def log_message(self) -> str:
        cancelled = f" (cancelled: {', '.join(self.cancelled_stages)})" if self.cancelled_stages else ""
        return f"🛑 Pipeline '{self.pipeline}' run {self.run_id} aborted: {self.reason}{cancelled}"


# Stage events
@dataclass(slots=True)
class StageStarted(Event):
    """A stage attempt was dispatched."""

    run_id: str
    name: str
    attempt: int
    needs: tuple[str, ...] = ()

    def log_message(self) -> str:
        deps = f" (needs: {', '.join(self.needs)})" if self.needs else ""
        return f"▶️ Stage '{self.name}' started, attempt {self.attempt}{deps}"


@dataclass(slots=True)
class StageCompleted(Event):
    """A stage succeeded."""

    run_id: str
    name: str
    attempt: int
    duration_ms: float
    artifacts: dict[str, str] = field(default_factory=dict)

    def log_message(self) -> str:
        return f"✅ Stage '{self.name}' succeeded in {self.duration_ms / 1000:.2f}s"


@dataclass(slots=True)
class StageFailed(Event):
    """A stage failed with no retry budget left."""

    run_id: str
    name: str
    attempt: int
    error: str | None
    error_type: str | None = None
    optional: bool = False

    def log_message(self) -> str:
        note = " (optional)" if self.optional else ""
        return f"❌ Stage '{self.name}'{note} failed after {self.attempt} attempt(s): {self.error}"


@dataclass(slots=True)
class StageRetrying(Event):
    """A failed stage attempt will be retried."""

    run_id: str
    name: str
    attempt: int
    retries_remaining: int
    error: str | None = None

    def log_message(self) -> str:
        return (
            f"🔁 Stage '{self.name}' attempt {self.attempt} failed ({self.error}); "
            f"retrying, {self.retries_remaining} retr(y/ies) left"
        )


@dataclass(slots=True)
class StageSkipped(Event):
    """A stage was skipped (false condition, failed prerequisite, or run stop)."""

    run_id: str
    name: str
    reason: str | None = None

    def log_message(self) -> str:
        return f"⏭️ Stage '{self.name}' skipped: {self.reason or 'unknown'}"


__all__ = [
    "Event",
    "PipelineAborted",
    "PipelineCompleted",
    "PipelineStarted",
    "StageCompleted",
    "StageFailed",
    "StageRetrying",
    "StageSkipped",
    "StageStarted",
]
