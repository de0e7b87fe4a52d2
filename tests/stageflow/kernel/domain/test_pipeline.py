"""Tests for stage and pipeline definitions, triggers and run context."""

import pytest

from stageflow.kernel.domain import (
    PipelineDefinition,
    RunContext,
    SkipPolicy,
    StageDefinition,
    Trigger,
)
from stageflow.kernel.exceptions import CycleError, ValidationError
from stageflow.kernel.types import Secret, SecretRef


class TestStageDefinition:
    """Tests for StageDefinition."""

    def test_scheme_and_target(self) -> None:
        stage = StageDefinition("compile", "shell: mvn -B package")
        assert stage.scheme == "shell"
        assert stage.target == "mvn -B package"

    def test_target_keeps_later_colons(self) -> None:
        stage = StageDefinition("notify", "py: hooks.slack:notify")
        assert stage.scheme == "py"
        assert stage.target == "hooks.slack:notify"

    def test_collections_normalized(self) -> None:
        stage = StageDefinition("test", "shell: make", needs=["compile", "compile", "lint"])
        assert stage.needs == ("compile", "lint")

    def test_after_adds_prerequisites(self) -> None:
        stage = StageDefinition("test", "shell: make test").after("compile")
        assert stage.needs == ("compile",)

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            StageDefinition("test", "shell: make", retries=-1)
        assert exc_info.value.field == "test.retries"

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StageDefinition("test", "shell: make", timeout=0)

    def test_bad_condition_rejected_at_definition(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            StageDefinition("deploy", "shell: ./deploy.sh", when="__import__('os')")
        assert exc_info.value.field == "deploy.when"

    def test_condition_without_when_always_holds(self) -> None:
        assert StageDefinition("a", "shell: true").condition_holds({}) is True

    def test_env_is_read_only(self) -> None:
        stage = StageDefinition("a", "shell: true", env={"PROFILE": "fast"})
        with pytest.raises(TypeError):
            stage.env["PROFILE"] = "slow"  # type: ignore[index]


class TestPipelineDefinition:
    """Tests for PipelineDefinition validation."""

    def test_valid_pipeline(self) -> None:
        pipeline = PipelineDefinition(
            name="ci",
            stages=(
                StageDefinition("compile", "shell: make", outputs=("bin",)),
                StageDefinition("test", "shell: make test", needs=("compile",), inputs=("bin",)),
            ),
        )
        assert pipeline.stage_names == ["compile", "test"]
        assert pipeline["test"].inputs == ("bin",)
        with pytest.raises(KeyError):
            pipeline["deploy"]

    def test_cycle_rejected_before_execution(self) -> None:
        with pytest.raises(CycleError):
            PipelineDefinition(
                name="ci",
                stages=(
                    StageDefinition("a", "shell: true", needs=("b",)),
                    StageDefinition("b", "shell: true", needs=("a",)),
                ),
            )

    def test_empty_pipeline_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PipelineDefinition(name="ci", stages=())

    def test_undeclared_secret_handle(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            PipelineDefinition(
                name="ci",
                stages=(StageDefinition("deploy", "shell: ./deploy.sh", secrets=("TOKEN",)),),
            )
        assert exc_info.value.field == "deploy.secrets"

    def test_build_graph_with_policy(self) -> None:
        pipeline = PipelineDefinition(name="ci", stages=(StageDefinition("a", "shell: true"),))
        assert pipeline.build_graph(SkipPolicy.SATISFY).skip_policy == SkipPolicy.SATISFY


class TestTrigger:
    """Tests for Trigger ref parsing."""

    def test_branch_ref(self) -> None:
        trigger = Trigger(ref="refs/heads/release/1.2", commit_sha="abc", actor="dev")
        assert trigger.branch == "release/1.2"
        assert trigger.tag is None
        assert trigger.event_type == "push"

    def test_tag_ref(self) -> None:
        trigger = Trigger(ref="refs/tags/v1.0.0", commit_sha="abc", actor="ci", event_type="tag")
        assert trigger.branch is None
        assert trigger.tag == "v1.0.0"

    def test_bare_branch_name(self) -> None:
        assert Trigger(ref="feature-x", commit_sha="abc", actor="dev").branch == "feature-x"


class TestRunContext:
    """Tests for RunContext."""

    @pytest.fixture
    def context(self) -> RunContext:
        return RunContext(
            trigger=Trigger(ref="refs/heads/main", commit_sha="abc", actor="dev"),
            variables={"PROFILE": "fast"},
            secrets={"TOKEN": SecretRef("registry/token")},
        )

    def test_expression_data_has_no_secrets(self, context: RunContext) -> None:
        data = context.expression_data({"compile": "succeeded"})
        assert data["branch"] == "main"
        assert data["vars"] == {"PROFILE": "fast"}
        assert data["stages"] == {"compile": "succeeded"}
        assert "secrets" not in data
        assert "TOKEN" not in repr(data)

    def test_environment(self, context: RunContext) -> None:
        env = context.environment()
        assert env["STAGEFLOW_BRANCH"] == "main"
        assert env["STAGEFLOW_COMMIT_SHA"] == "abc"
        assert env["PROFILE"] == "fast"
        assert "STAGEFLOW_TAG" not in env

    def test_context_is_immutable(self, context: RunContext) -> None:
        with pytest.raises(TypeError):
            context.variables["PROFILE"] = "slow"  # type: ignore[index]


class TestSecret:
    """Tests for secret value types."""

    def test_secret_hidden_in_repr(self) -> None:
        secret = Secret("hunter2")
        assert "hunter2" not in repr(secret)
        assert str(secret) == "<SECRET>"
        assert secret.get() == "hunter2"

    def test_secret_ref_str(self) -> None:
        assert str(SecretRef("registry/token")) == "secret://registry/token"
