"""Local observer manager: in-process event fan-out with fault isolation."""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, cast

from stageflow.kernel.logging import get_logger

if TYPE_CHECKING:
    from stageflow.kernel.orchestration.events import Event
    from stageflow.kernel.ports.observer_manager import AsyncObserverFunc, Observer, ObserverFunc

__all__ = ["LocalObserverManager"]

logger = get_logger(__name__)

DEFAULT_OBSERVER_TIMEOUT = 5.0
DEFAULT_MAX_SYNC_WORKERS = 2


class FunctionObserver:
    """Wrapper to make functions implement the Observer protocol."""

    def __init__(self, func: ObserverFunc | AsyncObserverFunc, executor: ThreadPoolExecutor):
        self._func = func
        self._executor = executor
        self.__name__ = getattr(func, "__name__", "anonymous_observer")

    async def handle(self, event: Event) -> None:
        if inspect.iscoroutinefunction(self._func):
            await self._func(event)
        else:
            # Run sync function in thread pool to avoid blocking the scheduler
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self._func, event)


class LocalObserverManager:
    """In-process implementation of the ObserverManager port.

    This implementation provides:
    - Event type filtering (subclasses match)
    - Concurrent delivery to all interested observers
    - Per-observer timeout
    - Fault isolation: observer errors are logged and swallowed
    """

    def __init__(
        self,
        observer_timeout: float | None = DEFAULT_OBSERVER_TIMEOUT,
        max_sync_workers: int = DEFAULT_MAX_SYNC_WORKERS,
    ) -> None:
        self._timeout = observer_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_sync_workers)
        self._executor_shutdown = False
        self._observers: dict[str, Observer] = {}
        self._event_filters: dict[str, tuple[type[Event], ...] | None] = {}

    def register(
        self,
        handler: Observer | ObserverFunc | AsyncObserverFunc,
        *,
        observer_id: str | None = None,
        event_types: Iterable[type[Event]] | type[Event] | None = None,
    ) -> str:
        """Register an observer with optional event type filtering.

        Raises
        ------
        ValueError
            If ``observer_id`` is already registered
        TypeError
            If the handler is neither callable nor an Observer
        """
        resolved_id = observer_id or str(uuid.uuid4())
        if resolved_id in self._observers:
            raise ValueError(f"Observer '{resolved_id}' already registered")

        if hasattr(handler, "handle"):
            observer = cast("Observer", handler)
        elif callable(handler):
            observer = FunctionObserver(handler, self._executor)
        else:
            raise TypeError(f"Observer must be callable or implement Observer protocol, got {type(handler)}")

        if event_types is None:
            filters = None
        elif isinstance(event_types, type):
            filters = (event_types,)
        else:
            filters = tuple(event_types)

        self._observers[resolved_id] = observer
        self._event_filters[resolved_id] = filters
        return resolved_id

    def unregister(self, observer_id: str) -> bool:
        self._event_filters.pop(observer_id, None)
        return self._observers.pop(observer_id, None) is not None

    async def notify(self, event: Event) -> None:
        """Deliver an event to every interested observer.

        Errors never propagate to the caller.
        """
        interested = [
            (observer_id, observer)
            for observer_id, observer in self._observers.items()
            if self._should_notify(observer_id, event)
        ]
        if not interested:
            return
        await asyncio.gather(*(self._safe_invoke(oid, obs, event) for oid, obs in interested))

    def clear(self) -> None:
        self._observers.clear()
        self._event_filters.clear()

    async def close(self) -> None:
        self.clear()
        if not self._executor_shutdown:
            self._executor.shutdown(wait=True)
            self._executor_shutdown = True

    def __len__(self) -> int:
        return len(self._observers)

    async def __aenter__(self) -> LocalObserverManager:
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    def _should_notify(self, observer_id: str, event: Event) -> bool:
        event_filter = self._event_filters.get(observer_id)
        if event_filter is None:
            return True
        return isinstance(event, event_filter)

    async def _safe_invoke(self, observer_id: str, observer: Observer, event: Event) -> None:
        """Invoke one observer with timeout; log and swallow its errors."""
        name = getattr(observer, "__name__", observer.__class__.__name__)
        try:
            if self._timeout is None:
                await observer.handle(event)
            else:
                await asyncio.wait_for(observer.handle(event), timeout=self._timeout)
        except TimeoutError:
            logger.warning(
                "Observer {} ({}) timed out after {}s on {}", name, observer_id, self._timeout, type(event).__name__
            )
        except Exception as e:
            logger.warning("Observer {} ({}) failed for {}: {}", name, observer_id, type(event).__name__, e)
