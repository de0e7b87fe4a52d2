"""Stage runner: executes one attempt of one stage.

The runner binds the stage (inputs, secrets, environment) into an
ActionInvocation, invokes the adapter selected by the action scheme under
the stage timeout, stores the captured log and declared outputs in the
artifact store, and reports a StageResult. It never retries; that decision
belongs to the controller.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
import aiofiles.tempfile

from stageflow.kernel.domain.artifact import ArtifactKind
from stageflow.kernel.domain.run import StageResult
from stageflow.kernel.exceptions import (
    ActionError,
    MissingArtifactError,
    NonZeroExitError,
    ResourceNotFoundError,
    SecretResolutionError,
    StageExecutionError,
    StageTimeoutError,
)
from stageflow.kernel.logging import get_logger
from stageflow.kernel.ports.action import ActionAdapter, ActionInvocation, ActionOutcome

if TYPE_CHECKING:
    from stageflow.kernel.domain.context import RunContext
    from stageflow.kernel.domain.pipeline import StageDefinition
    from stageflow.kernel.ports.artifact_store import ArtifactStore
    from stageflow.kernel.ports.secret import SecretResolver
    from stageflow.kernel.types import Secret

logger = get_logger(__name__)

_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9]")


def env_name(artifact: str) -> str:
    """Environment-safe upper-case form of an artifact name."""
    return _ENV_UNSAFE.sub("_", artifact).upper()


class StageRunner:
    """Executes single stage attempts.

    Parameters
    ----------
    artifact_store : ArtifactStore
        Where inputs are read from and outputs and logs are written to
    adapters : Mapping[str, ActionAdapter]
        Action adapters keyed by reference scheme (``"shell"``, ``"py"``)
    secret_resolver : SecretResolver | None
        Resolves the secret handles a stage binds
    default_timeout : float | None
        Timeout for stages that declare none
    workspace_root : Path | None
        Parent directory for per-attempt workspaces (system temp if None)

    Examples
    --------
    Example usage::

        runner = StageRunner(store, {"shell": SubprocessAction()})
        result = await runner.execute(stage, {}, context, attempt=1, run_id="r1")
        result.succeeded, result.log_ref
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        adapters: Mapping[str, ActionAdapter],
        secret_resolver: SecretResolver | None = None,
        *,
        default_timeout: float | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.artifact_store = artifact_store
        self.adapters = dict(adapters)
        self.secret_resolver = secret_resolver
        self.default_timeout = default_timeout
        self.workspace_root = workspace_root

    def adapter_for(self, stage: StageDefinition) -> ActionAdapter:
        """Select the adapter for the stage's action scheme.

        Raises
        ------
        ActionError
            If no adapter handles the scheme
        """
        adapter = self.adapters.get(stage.scheme)
        if adapter is None:
            known = ", ".join(f"{s}:" for s in sorted(self.adapters)) or "none"
            raise ActionError(stage.name, f"no adapter for action '{stage.action}' (known schemes: {known})")
        return adapter

    def timeout_for(self, stage: StageDefinition) -> float | None:
        return stage.timeout if stage.timeout is not None else self.default_timeout

    async def execute(
        self,
        stage: StageDefinition,
        inputs: Mapping[str, str],
        context: RunContext,
        *,
        attempt: int = 1,
        run_id: str | None = None,
    ) -> StageResult:
        """Run one attempt of *stage*.

        Parameters
        ----------
        stage : StageDefinition
            Stage to execute
        inputs : Mapping[str, str]
            Declared input name -> artifact reference
        context : RunContext
            Run context (trigger, variables, secret handles)
        attempt : int
            1-based attempt number, used to name the log artifact
        run_id : str | None
            Run the produced artifacts belong to

        Returns
        -------
        StageResult
            Failed results carry ``error_type`` (``NonZeroExitError``,
            ``MissingArtifactError``, ``StageTimeoutError``,
            ``SecretResolutionError`` or ``ActionError``)
        """
        started_at = time.time()
        exit_code: int | None = None
        log_ref: str | None = None

        try:
            async with aiofiles.tempfile.TemporaryDirectory(
                prefix=f"stageflow-{stage.name}-", dir=self.workspace_root
            ) as tmp:
                invocation = await self._bind(stage, inputs, context, Path(tmp), attempt, run_id)
                outcome = await self._invoke(stage, invocation)
                exit_code = outcome.exit_code
                log_ref = await self._store_log(stage, outcome, attempt, run_id)

                if exit_code != 0:
                    raise NonZeroExitError(stage.name, exit_code)
                artifacts = await self._collect_outputs(stage, invocation, run_id)

        except StageExecutionError as e:
            logger.error("Stage '{}' attempt {} failed: {}", stage.name, attempt, e)
            return self._failed(stage, e, started_at, exit_code, log_ref)
        except Exception as e:
            logger.exception("Unexpected error in stage '{}' attempt {}: {}", stage.name, attempt, e)
            error = ActionError(stage.name, f"{type(e).__name__}: {e}")
            return self._failed(stage, error, started_at, exit_code, log_ref)

        logger.info("Stage '{}' attempt {} succeeded", stage.name, attempt)
        return StageResult(
            stage=stage.name,
            succeeded=True,
            exit_code=exit_code,
            log_ref=log_ref,
            artifacts=artifacts,
            started_at=started_at,
            finished_at=time.time(),
        )

    @staticmethod
    def _failed(
        stage: StageDefinition,
        error: StageExecutionError,
        started_at: float,
        exit_code: int | None,
        log_ref: str | None,
    ) -> StageResult:
        return StageResult(
            stage=stage.name,
            succeeded=False,
            exit_code=exit_code,
            log_ref=log_ref,
            error=str(error),
            error_type=type(error).__name__,
            started_at=started_at,
            finished_at=time.time(),
        )

    # ------------------------------------------------------------------
    # Bind
    # ------------------------------------------------------------------

    async def _bind(
        self,
        stage: StageDefinition,
        inputs: Mapping[str, str],
        context: RunContext,
        workdir: Path,
        attempt: int,
        run_id: str | None,
    ) -> ActionInvocation:
        input_dir = workdir / "inputs"
        output_dir = workdir / "outputs"
        await aiofiles.os.mkdir(input_dir)
        await aiofiles.os.mkdir(output_dir)

        input_paths = await self._materialize_inputs(stage, inputs, input_dir)
        secrets = await self._resolve_secrets(stage, context)

        env = context.environment()
        env.update(stage.env)
        env.update(
            {
                "STAGEFLOW_STAGE": stage.name,
                "STAGEFLOW_ATTEMPT": str(attempt),
                "STAGEFLOW_WORKDIR": str(workdir),
                "STAGEFLOW_OUTPUT_DIR": str(output_dir),
            }
        )
        if run_id is not None:
            env["STAGEFLOW_RUN_ID"] = run_id
        for name, path in input_paths.items():
            env[f"STAGEFLOW_INPUT_{env_name(name)}"] = str(path)

        return ActionInvocation(
            stage=stage.name,
            target=stage.target,
            workdir=workdir,
            output_dir=output_dir,
            inputs=input_paths,
            env=env,
            secrets=secrets,
            attempt=attempt,
        )

    async def _materialize_inputs(
        self, stage: StageDefinition, inputs: Mapping[str, str], input_dir: Path
    ) -> dict[str, Path]:
        missing = [name for name in stage.inputs if name not in inputs]
        if missing:
            raise MissingArtifactError(stage.name, missing, direction="input")

        paths: dict[str, Path] = {}
        for name in stage.inputs:
            ref = inputs[name]
            try:
                artifact = await self.artifact_store.aget(ref)
                data = await self.artifact_store.aread(artifact.digest)
            except ResourceNotFoundError as e:
                raise MissingArtifactError(stage.name, [name], direction="input") from e

            path = input_dir / name
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
            await self.artifact_store.arecord_consumer(ref, stage.name)
            paths[name] = path
        return paths

    async def _resolve_secrets(self, stage: StageDefinition, context: RunContext) -> dict[str, Secret]:
        resolved: dict[str, Secret] = {}
        for handle in stage.secrets:
            ref = context.secrets.get(handle)
            if ref is None:
                raise SecretResolutionError(stage.name, handle, "handle is not bound in the run context")
            if self.secret_resolver is None:
                raise SecretResolutionError(stage.name, handle, "no secret resolver configured")
            try:
                resolved[handle] = await self.secret_resolver.aresolve(ref.key)
            except (KeyError, ValueError) as e:
                raise SecretResolutionError(stage.name, handle, str(e)) from e
        return resolved

    # ------------------------------------------------------------------
    # Invoke & collect
    # ------------------------------------------------------------------

    async def _invoke(self, stage: StageDefinition, invocation: ActionInvocation) -> ActionOutcome:
        adapter = self.adapter_for(stage)
        timeout = self.timeout_for(stage)
        logger.debug("Invoking '{}' for stage '{}' (timeout={})", stage.action, stage.name, timeout)
        try:
            async with asyncio.timeout(timeout):
                return await adapter.ainvoke(invocation)
        except TimeoutError as e:
            if timeout is None or isinstance(e, StageExecutionError):
                raise
            raise StageTimeoutError(stage.name, timeout) from e

    async def _store_log(
        self, stage: StageDefinition, outcome: ActionOutcome, attempt: int, run_id: str | None
    ) -> str:
        artifact = await self.artifact_store.aput(
            outcome.log.encode(),
            name=f"log.{attempt}",
            producer=stage.name,
            run_id=run_id,
            kind=ArtifactKind.LOG,
        )
        return artifact.ref

    async def _collect_outputs(
        self, stage: StageDefinition, invocation: ActionInvocation, run_id: str | None
    ) -> dict[str, str]:
        """Store declared outputs; all or nothing."""
        missing = [
            name for name in stage.outputs if not await aiofiles.os.path.isfile(invocation.output_path(name))
        ]
        if missing:
            raise MissingArtifactError(stage.name, missing)

        refs: dict[str, str] = {}
        for name in stage.outputs:
            async with aiofiles.open(invocation.output_path(name), "rb") as f:
                data = await f.read()
            artifact = await self.artifact_store.aput(data, name=name, producer=stage.name, run_id=run_id)
            refs[name] = artifact.ref
        return refs
