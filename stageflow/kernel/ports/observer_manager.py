"""Port interface for event observation."""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from stageflow.kernel.orchestration.events import Event

ObserverFunc = Callable[["Event"], None]
AsyncObserverFunc = Callable[["Event"], Any]  # returns awaitable


class Observer(Protocol):
    """Protocol for observers that monitor events."""

    async def handle(self, event: Event) -> None:
        """Handle an event (read-only, no return value)."""
        ...


class ObserverManager(Protocol):
    """Port interface for event fan-out.

    Observers are read-only: they cannot affect execution, and an observer
    failure never breaks the run.
    """

    @abstractmethod
    def register(
        self,
        handler: Observer | ObserverFunc | AsyncObserverFunc,
        *,
        observer_id: str | None = None,
        event_types: Iterable[type[Event]] | type[Event] | None = None,
    ) -> str:
        """Register an observer, optionally filtered by event type; return its id."""
        ...

    @abstractmethod
    def unregister(self, observer_id: str) -> bool: ...

    @abstractmethod
    async def notify(self, event: Event) -> None:
        """Deliver an event to every interested observer."""
        ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def __len__(self) -> int: ...
