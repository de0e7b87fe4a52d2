"""Tests for the stage runner."""

import asyncio
import sys

import pytest

from stageflow.drivers.actions import CallableAction, SubprocessAction
from stageflow.drivers.artifact_store import InMemoryArtifactStore
from stageflow.drivers.secrets import EnvSecretResolver
from stageflow.kernel.domain import ArtifactKind, RunContext, StageDefinition, Trigger
from stageflow.kernel.orchestration import StageRunner
from stageflow.kernel.ports.action import ActionInvocation, ActionOutcome
from stageflow.kernel.types import SecretRef


@pytest.fixture
def store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def actions() -> CallableAction:
    return CallableAction()


@pytest.fixture
def runner(store: InMemoryArtifactStore, actions: CallableAction) -> StageRunner:
    return StageRunner(store, {"py": actions, "shell": SubprocessAction(grace_period=0.5)})


@pytest.fixture
def context() -> RunContext:
    return RunContext(
        trigger=Trigger(ref="refs/heads/main", commit_sha="abc123", actor="dev"),
        variables={"PROFILE": "fast"},
        secrets={"TOKEN": SecretRef("DEPLOY_TOKEN")},
    )


class TestStageRunnerSuccess:
    """Tests for successful attempts."""

    @pytest.mark.asyncio
    async def test_outputs_stored(
        self, runner: StageRunner, actions: CallableAction, store: InMemoryArtifactStore, context: RunContext
    ) -> None:
        @actions.register("build")
        def build(invocation: ActionInvocation) -> str:
            invocation.write_output("app.jar", b"PK\x03\x04jar")
            return "built"

        stage = StageDefinition("compile", "py: build", outputs=("app.jar",))
        result = await runner.execute(stage, {}, context, attempt=1, run_id="r1")

        assert result.succeeded
        assert result.exit_code == 0
        assert result.artifacts == {"app.jar": "r1/compile/app.jar"}
        artifact = await store.aget("r1/compile/app.jar")
        assert await store.aread(artifact.digest) == b"PK\x03\x04jar"
        assert artifact.producer == "compile"

    @pytest.mark.asyncio
    async def test_log_stored_per_attempt(
        self, runner: StageRunner, actions: CallableAction, store: InMemoryArtifactStore, context: RunContext
    ) -> None:
        actions.register("hello", lambda invocation: ActionOutcome(0, stdout="hello\n", stderr="warn\n"))
        stage = StageDefinition("greet", "py: hello")

        result = await runner.execute(stage, {}, context, attempt=2, run_id="r1")

        assert result.log_ref == "r1/greet/log.2"
        log = await store.aget(result.log_ref)
        assert log.kind == ArtifactKind.LOG
        content = (await store.aread(log.digest)).decode()
        assert "hello" in content
        assert "--- stderr ---" in content

    @pytest.mark.asyncio
    async def test_inputs_materialized_and_consumer_recorded(
        self, runner: StageRunner, actions: CallableAction, store: InMemoryArtifactStore, context: RunContext
    ) -> None:
        jar = await store.aput(b"jar-bytes", name="app.jar", producer="compile", run_id="r1")
        seen: dict[str, bytes] = {}

        @actions.register("check")
        async def check(invocation: ActionInvocation) -> int:
            seen["jar"] = invocation.read_input("app.jar")
            seen["env"] = invocation.env["STAGEFLOW_INPUT_APP_JAR"].encode()
            return 0

        stage = StageDefinition("test", "py: check", inputs=("app.jar",))
        result = await runner.execute(stage, {"app.jar": jar.ref}, context, run_id="r1")

        assert result.succeeded
        assert seen["jar"] == b"jar-bytes"
        assert seen["env"].endswith(b"app.jar")
        assert (await store.aget(jar.ref)).consumers == ("test",)

    @pytest.mark.asyncio
    async def test_workspace_created_under_root_and_removed(
        self, store: InMemoryArtifactStore, actions: CallableAction, context: RunContext, tmp_path
    ) -> None:
        seen: dict[str, bool] = {}

        @actions.register("list_dirs")
        def inspect(invocation: ActionInvocation) -> None:
            seen["under_root"] = invocation.workdir.parent == tmp_path
            seen["dirs"] = invocation.output_dir.is_dir() and (invocation.workdir / "inputs").is_dir()
            invocation.write_output("report.txt", "ok")

        runner = StageRunner(store, {"py": actions}, workspace_root=tmp_path)
        stage = StageDefinition("inspect", "py: list_dirs", outputs=("report.txt",))

        result = await runner.execute(stage, {}, context, run_id="r1")

        assert result.succeeded
        assert seen == {"under_root": True, "dirs": True}
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_environment(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        captured: dict[str, str] = {}
        actions.register("env", lambda invocation: captured.update(invocation.env))
        stage = StageDefinition("show", "py: env", env={"EXTRA": "1"})

        await runner.execute(stage, {}, context, attempt=3, run_id="r9")

        assert captured["STAGEFLOW_STAGE"] == "show"
        assert captured["STAGEFLOW_ATTEMPT"] == "3"
        assert captured["STAGEFLOW_RUN_ID"] == "r9"
        assert captured["STAGEFLOW_BRANCH"] == "main"
        assert captured["PROFILE"] == "fast"
        assert captured["EXTRA"] == "1"


class TestStageRunnerFailures:
    """Tests for failed attempts and their error types."""

    @pytest.mark.asyncio
    async def test_missing_output_on_zero_exit(
        self, runner: StageRunner, actions: CallableAction, context: RunContext
    ) -> None:
        """A zero exit without every declared output is a failure."""

        @actions.register("partial")
        def partial(invocation: ActionInvocation) -> None:
            invocation.write_output("app.jar", "jar")

        stage = StageDefinition("compile", "py: partial", outputs=("app.jar", "sbom.json"))
        result = await runner.execute(stage, {}, context, run_id="r1")

        assert not result.succeeded
        assert result.exit_code == 0
        assert result.error_type == "MissingArtifactError"
        assert "sbom.json" in result.error
        assert result.artifacts == {}
        assert result.log_ref is not None

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        actions.register("fail", lambda invocation: 3)
        result = await runner.execute(StageDefinition("test", "py: fail"), {}, context)

        assert not result.succeeded
        assert result.exit_code == 3
        assert result.error_type == "NonZeroExitError"
        assert result.log_ref == "-/test/log.1"

    @pytest.mark.asyncio
    async def test_timeout(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        cancelled = asyncio.Event()

        @actions.register("hang")
        async def hang(invocation: ActionInvocation) -> int:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return 0

        stage = StageDefinition("slow", "py: hang", timeout=0.05)
        result = await runner.execute(stage, {}, context)

        assert not result.succeeded
        assert result.error_type == "StageTimeoutError"
        assert result.exit_code is None
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_default_timeout(self, store: InMemoryArtifactStore, actions: CallableAction, context: RunContext) -> None:
        actions.register("hang", lambda invocation: asyncio.sleep(10))
        runner = StageRunner(store, {"py": actions}, default_timeout=0.05)

        result = await runner.execute(StageDefinition("slow", "py: hang"), {}, context)

        assert result.error_type == "StageTimeoutError"

    @pytest.mark.asyncio
    async def test_missing_input(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        actions.register("noop", lambda invocation: 0)
        stage = StageDefinition("test", "py: noop", inputs=("app.jar",))

        result = await runner.execute(stage, {"app.jar": "r1/compile/app.jar"}, context)

        assert result.error_type == "MissingArtifactError"
        assert "input" in result.error

    @pytest.mark.asyncio
    async def test_action_exception(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        def boom(invocation: ActionInvocation) -> None:
            raise RuntimeError("adapter exploded")

        actions.register("boom", boom)
        result = await runner.execute(StageDefinition("crash", "py: boom"), {}, context)

        assert result.error_type == "ActionError"
        assert "adapter exploded" in result.error

    @pytest.mark.asyncio
    async def test_unknown_scheme(self, runner: StageRunner, context: RunContext) -> None:
        result = await runner.execute(StageDefinition("x", "docker: alpine"), {}, context)
        assert result.error_type == "ActionError"
        assert "no adapter" in result.error


class TestStageRunnerSecrets:
    """Tests for secret binding."""

    @pytest.mark.asyncio
    async def test_secret_resolved_at_bind(
        self,
        store: InMemoryArtifactStore,
        actions: CallableAction,
        context: RunContext,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("DEPLOY_TOKEN", "hunter2")
        runner = StageRunner(store, {"py": actions}, EnvSecretResolver())
        captured = {}

        @actions.register("deploy")
        def deploy(invocation: ActionInvocation) -> None:
            captured["token"] = invocation.secrets["TOKEN"].get()
            captured["env"] = dict(invocation.env)

        stage = StageDefinition("deploy", "py: deploy", secrets=("TOKEN",))
        result = await runner.execute(stage, {}, context)

        assert result.succeeded
        assert captured["token"] == "hunter2"
        assert "hunter2" not in captured["env"].values()

    @pytest.mark.asyncio
    async def test_unresolvable_secret(
        self,
        store: InMemoryArtifactStore,
        actions: CallableAction,
        context: RunContext,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.delenv("DEPLOY_TOKEN", raising=False)
        runner = StageRunner(store, {"py": actions}, EnvSecretResolver())
        actions.register("deploy", lambda invocation: 0)

        result = await runner.execute(StageDefinition("deploy", "py: deploy", secrets=("TOKEN",)), {}, context)

        assert result.error_type == "SecretResolutionError"
        assert "TOKEN" in result.error

    @pytest.mark.asyncio
    async def test_no_resolver(self, runner: StageRunner, actions: CallableAction, context: RunContext) -> None:
        actions.register("deploy", lambda invocation: 0)
        result = await runner.execute(StageDefinition("deploy", "py: deploy", secrets=("TOKEN",)), {}, context)
        assert result.error_type == "SecretResolutionError"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
class TestStageRunnerShell:
    """Tests running real shell commands."""

    @pytest.mark.asyncio
    async def test_shell_output(self, runner: StageRunner, store: InMemoryArtifactStore, context: RunContext) -> None:
        stage = StageDefinition(
            "compile",
            'shell: echo "built $STAGEFLOW_COMMIT_SHA" && printf jar > "$STAGEFLOW_OUTPUT_DIR/app.jar"',
            outputs=("app.jar",),
        )
        result = await runner.execute(stage, {}, context, run_id="r1")

        assert result.succeeded, result.error
        log = await store.aget(result.log_ref)
        assert b"built abc123" in await store.aread(log.digest)
        jar = await store.aget(result.artifacts["app.jar"])
        assert await store.aread(jar.digest) == b"jar"

    @pytest.mark.asyncio
    async def test_shell_exit_status(self, runner: StageRunner, context: RunContext) -> None:
        result = await runner.execute(StageDefinition("lint", "shell: echo oops >&2; exit 4"), {}, context)
        assert result.exit_code == 4
        assert result.error_type == "NonZeroExitError"

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_shell_timeout_terminates(self, runner: StageRunner, context: RunContext) -> None:
        stage = StageDefinition("hang", "shell: sleep 30", timeout=0.2)
        result = await asyncio.wait_for(runner.execute(stage, {}, context), timeout=10)
        assert result.error_type == "StageTimeoutError"
