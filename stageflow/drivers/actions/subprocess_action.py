"""Shell action adapter (``shell:`` scheme).

Runs the action target through the system shell in the attempt's private
workspace, capturing stdout and stderr. Cancellation (stage timeout or
run abort) terminates the whole process group, waits a grace period and
then kills it.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from stageflow.kernel.exceptions import ActionError
from stageflow.kernel.logging import get_logger
from stageflow.kernel.ports.action import ActionInvocation, ActionOutcome

__all__ = ["SubprocessAction"]

logger = get_logger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


class SubprocessAction:
    """Action adapter that runs shell commands as subprocesses.

    Secrets bound by the stage are exported as environment variables named
    after their handle; they never appear in ``invocation.env`` or logs.

    Examples
    --------
    Example usage::

        adapter = SubprocessAction(grace_period=2.0)
        outcome = await adapter.ainvoke(invocation)  # invocation.target == "mvn -B package"
        outcome.exit_code  # 0
    """

    def __init__(
        self,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        inherit_env: bool = True,
        encoding: str = "utf-8",
        **kwargs: Any,
    ) -> None:
        """Initialize the adapter.

        Parameters
        ----------
        grace_period : float, default=5.0
            Seconds between terminate and kill when the action is cancelled
        inherit_env : bool, default=True
            Start from the orchestrator's own environment
        encoding : str, default="utf-8"
            Encoding used to decode captured output
        """
        self.grace_period = grace_period
        self.inherit_env = inherit_env
        self.encoding = encoding

    def _build_env(self, invocation: ActionInvocation) -> dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {}
        env.update(invocation.env)
        env.update({name: secret.get() for name, secret in invocation.secrets.items()})
        return env

    async def ainvoke(self, invocation: ActionInvocation) -> ActionOutcome:
        if not invocation.target:
            raise ActionError(invocation.stage, "empty shell command")

        try:
            proc = await asyncio.create_subprocess_shell(
                invocation.target,
                cwd=invocation.workdir,
                env=self._build_env(invocation),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ActionError(invocation.stage, f"cannot start process: {e}") from e

        logger.debug("Stage '{}' started pid {}: {}", invocation.stage, proc.pid, invocation.target)
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            await self._terminate(invocation.stage, proc)
            raise

        return ActionOutcome(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(self.encoding, errors="replace"),
            stderr=stderr.decode(self.encoding, errors="replace"),
        )

    async def _terminate(self, stage: str, proc: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after the grace period."""
        if proc.returncode is not None:
            return

        logger.warning("Cancelling stage '{}': terminating pid {}", stage, proc.pid)
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except TimeoutError:
            logger.warning(
                "Stage '{}' pid {} ignored SIGTERM for {}s, killing", stage, proc.pid, self.grace_period
            )
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            await proc.wait()

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                # start_new_session=True makes the shell a process group leader
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
