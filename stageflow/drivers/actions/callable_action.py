"""Python callable action adapter (``py:`` scheme).

Callables are looked up in a registry by name, or imported from a
``module:attribute`` target. A callable receives the ActionInvocation and
may return:

- ``None`` or ``True``: exit status 0
- ``False``: exit status 1
- ``int``: that exit status
- ``str``: exit status 0, the string is captured as stdout
- ``ActionOutcome``: used as-is
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
from collections.abc import Callable
from typing import Any

from stageflow.kernel.exceptions import ActionError
from stageflow.kernel.logging import get_logger
from stageflow.kernel.ports.action import ActionInvocation, ActionOutcome

__all__ = ["ActionCallable", "CallableAction"]

logger = get_logger(__name__)

ActionCallable = Callable[[ActionInvocation], Any]  # may return an awaitable


class CallableAction:
    """Action adapter backed by a registry of Python callables.

    Sync callables run in the default thread pool so they do not block the
    scheduler loop. A cancelled sync callable cannot be interrupted; its
    result is discarded.

    Examples
    --------
    Example usage::

        actions = CallableAction()

        @actions.register("package")
        def package(inv: ActionInvocation) -> None:
            inv.write_output("jar", b"...")

        # stage action: "py:package"
    """

    def __init__(self, callables: dict[str, ActionCallable] | None = None, **kwargs: Any) -> None:
        self._callables: dict[str, ActionCallable] = dict(callables or {})

    def register(
        self, name: str, func: ActionCallable | None = None
    ) -> ActionCallable | Callable[[ActionCallable], ActionCallable]:
        """Register a callable under *name*; usable as a decorator."""

        def decorator(f: ActionCallable) -> ActionCallable:
            if name in self._callables and self._callables[name] is not f:
                raise ValueError(f"Action '{name}' is already registered")
            self._callables[name] = f
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def names(self) -> list[str]:
        return sorted(self._callables)

    def __contains__(self, name: object) -> bool:
        return name in self._callables

    def resolve(self, stage: str, target: str) -> ActionCallable:
        """Find the callable for a target.

        Raises
        ------
        ActionError
            If the target is neither registered nor importable
        """
        if target in self._callables:
            return self._callables[target]

        module_name, sep, attr = target.partition(":")
        if not sep:
            available = ", ".join(self.names()) or "none"
            raise ActionError(stage, f"unknown callable '{target}' (registered: {available})")
        try:
            func = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise ActionError(stage, f"cannot import callable '{target}': {e}") from e
        if not callable(func):
            raise ActionError(stage, f"'{target}' is not callable")
        return func

    async def ainvoke(self, invocation: ActionInvocation) -> ActionOutcome:
        func = self.resolve(invocation.stage, invocation.target)

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(invocation)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, func, invocation)
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Callable action for stage '{}' raised {}", invocation.stage, type(e).__name__)
            raise ActionError(invocation.stage, f"{type(e).__name__}: {e}") from e

        return self._to_outcome(invocation.stage, result)

    @staticmethod
    def _to_outcome(stage: str, result: Any) -> ActionOutcome:
        if isinstance(result, ActionOutcome):
            return result
        if result is None or result is True:
            return ActionOutcome(exit_code=0)
        if result is False:
            return ActionOutcome(exit_code=1)
        if isinstance(result, int):
            return ActionOutcome(exit_code=result)
        if isinstance(result, str):
            return ActionOutcome(exit_code=0, stdout=result)
        raise ActionError(stage, f"unsupported callable result type {type(result).__name__}")
