"""Tests for LocalObserverManager."""

import asyncio

import pytest

from stageflow.drivers.observer_manager import LocalObserverManager
from stageflow.kernel.orchestration.events import Event, StageCompleted, StageFailed, StageStarted
from stageflow.kernel.ports.observer_manager import ObserverManager


def started(name: str = "compile") -> StageStarted:
    return StageStarted(run_id="r1", name=name, attempt=1)


class RecordingObserver:
    """Observer protocol implementation."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def handle(self, event: Event) -> None:
        self.events.append(event)


class TestLocalObserverManager:
    """Tests for registration, filtering and fault isolation."""

    def test_implements_port(self) -> None:
        manager: ObserverManager = LocalObserverManager()
        for method in ("register", "unregister", "notify", "clear", "close"):
            assert callable(getattr(manager, method))

    @pytest.mark.asyncio
    async def test_sync_async_and_protocol_observers(self) -> None:
        sync_events: list[Event] = []
        async_events: list[Event] = []
        observer = RecordingObserver()

        async def on_event(event: Event) -> None:
            async_events.append(event)

        async with LocalObserverManager() as manager:
            manager.register(sync_events.append)
            manager.register(on_event)
            manager.register(observer)
            await manager.notify(started())

        assert len(sync_events) == len(async_events) == len(observer.events) == 1

    @pytest.mark.asyncio
    async def test_event_type_filter(self) -> None:
        observer = RecordingObserver()
        async with LocalObserverManager() as manager:
            manager.register(observer, event_types=[StageCompleted, StageFailed])
            await manager.notify(started())
            await manager.notify(StageFailed(run_id="r1", name="test", attempt=1, error="exit 1"))

        assert [type(e) for e in observer.events] == [StageFailed]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_block_others(self) -> None:
        observer = RecordingObserver()

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        async with LocalObserverManager() as manager:
            manager.register(broken)
            manager.register(observer)
            await manager.notify(started())

        assert len(observer.events) == 1

    @pytest.mark.asyncio
    async def test_slow_observer_times_out(self) -> None:
        async def slow(event: Event) -> None:
            await asyncio.sleep(5)

        async with LocalObserverManager(observer_timeout=0.05) as manager:
            manager.register(slow)
            await asyncio.wait_for(manager.notify(started()), timeout=1)

    def test_register_and_unregister(self) -> None:
        manager = LocalObserverManager()
        observer_id = manager.register(RecordingObserver(), observer_id="audit")

        with pytest.raises(ValueError):
            manager.register(RecordingObserver(), observer_id="audit")
        with pytest.raises(TypeError):
            manager.register(42)  # type: ignore[arg-type]

        assert observer_id == "audit"
        assert len(manager) == 1
        assert manager.unregister("audit") is True
        assert manager.unregister("audit") is False

    def test_log_message(self) -> None:
        assert "compile" in started().log_message()
