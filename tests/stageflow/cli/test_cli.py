"""Tests for the stageflow CLI."""

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from stageflow.cli.main import app

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="pipelines use POSIX shell actions")

PIPELINE = """\
kind: Pipeline
metadata:
  name: demo
spec:
  stages:
    - name: build
      action: 'shell: echo building; printf artifact > "$STAGEFLOW_OUTPUT_DIR/out.txt"'
      outputs: [out.txt]
    - name: check
      needs: [build]
      action: 'shell: test "$(cat "$STAGEFLOW_INPUT_OUT_TXT")" = artifact'
      inputs: [out.txt]
    - name: deploy
      needs: [check]
      when: "branch == 'main'"
      action: "shell: echo deploying"
"""

FAILING = """\
kind: Pipeline
metadata:
  name: broken
spec:
  stages:
    - name: lint
      action: "shell: echo style violations >&2; exit 3"
    - name: package
      needs: [lint]
      action: "shell: true"
"""

CYCLIC = """\
kind: Pipeline
metadata:
  name: cyclic
spec:
  stages:
    - name: a
      needs: [b]
      action: "shell: true"
    - name: b
      needs: [a]
      action: "shell: true"
"""


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Working directory with a config that keeps stores under tmp_path."""
    (tmp_path / "stageflow.yaml").write_text(
        "kind: Config\n"
        "spec:\n"
        "  logging:\n"
        "    level: WARNING\n"
        "  storage:\n"
        f"    artifact_dir: {tmp_path / 'artifacts'}\n"
        f"    run_dir: {tmp_path / 'runs'}\n"
    )
    (tmp_path / "demo.yaml").write_text(PIPELINE)
    (tmp_path / "broken.yaml").write_text(FAILING)
    (tmp_path / "cyclic.yaml").write_text(CYCLIC)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def invoke(runner: CliRunner, *args: str):
    return runner.invoke(app, ["--config", "stageflow.yaml", *args])


class TestValidate:
    """Tests for `stageflow validate`."""

    def test_valid(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "validate", "demo.yaml")
        assert result.exit_code == 0, result.output
        assert "Validation successful" in result.output
        assert "demo" in result.output

    def test_valid_json(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "-q", "--json", "validate", "demo.yaml")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["valid"] is True
        assert data["waves"] == [["build"], ["check"], ["deploy"]]

    def test_cycle_is_invalid(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "validate", "cyclic.yaml")
        assert result.exit_code == 2
        assert "Invalid definition" in result.output

    def test_missing_file(self, runner: CliRunner, workspace: Path) -> None:
        assert invoke(runner, "validate", "absent.yaml").exit_code == 2


class TestRun:
    """Tests for `stageflow run`."""

    def test_main_branch_succeeds(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "-q", "--json", "run", "demo.yaml", "--run-id", "r1", "--sha", "3f2a1c0")

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["status"] == "succeeded"
        assert report["commit_sha"] == "3f2a1c0"
        stages = {s["name"]: s for s in report["stages"]}
        assert stages["deploy"]["status"] == "succeeded"
        assert stages["build"]["artifacts"] == {"out.txt": "r1/build/out.txt"}
        assert (workspace / "runs" / "r1.json").is_file()

    def test_feature_branch_skips_deploy(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "-q", "--json", "run", "demo.yaml", "--ref", "refs/heads/feature-x")

        assert result.exit_code == 0, result.output
        stages = {s["name"]: s for s in json.loads(result.stdout)["stages"]}
        assert stages["deploy"]["status"] == "skipped"

    def test_pretty_progress(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "run", "demo.yaml", "--run-id", "r2")
        assert result.exit_code == 0, result.output
        assert "Run started" in result.output
        assert "build" in result.output

    def test_failed_run_exits_one(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "run", "broken.yaml", "--run-id", "bad")
        assert result.exit_code == 1
        assert "lint" in result.output

    def test_invalid_manifest_exits_two(self, runner: CliRunner, workspace: Path) -> None:
        assert invoke(runner, "run", "cyclic.yaml").exit_code == 2

    def test_bad_variable(self, runner: CliRunner, workspace: Path) -> None:
        result = invoke(runner, "run", "demo.yaml", "--var", "NOEQUALS")
        assert result.exit_code == 2


class TestRuns:
    """Tests for `stageflow runs ...` against a recorded run."""

    @pytest.fixture
    def recorded(self, runner: CliRunner, workspace: Path) -> str:
        result = invoke(runner, "-q", "run", "demo.yaml", "--run-id", "r1")
        assert result.exit_code == 0, result.output
        return "r1"

    def test_list(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "-q", "--json", "runs", "list")
        assert result.exit_code == 0, result.output
        runs = json.loads(result.stdout)
        assert [r["run_id"] for r in runs] == [recorded]
        assert runs[0]["pipeline"] == "demo"

    def test_list_filtered(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "-q", "--json", "runs", "list", "--pipeline", "other")
        assert json.loads(result.stdout) == []

    def test_show(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "runs", "show", recorded)
        assert result.exit_code == 0, result.output
        assert "deploy" in result.output

    def test_show_unknown(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "runs", "show", "nope")
        assert result.exit_code == 1

    def test_logs(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "-q", "runs", "logs", recorded, "build")
        assert result.exit_code == 0, result.output
        assert "building" in result.output

    def test_logs_unknown_stage(self, runner: CliRunner, recorded: str) -> None:
        assert invoke(runner, "runs", "logs", recorded, "nope").exit_code == 1

    def test_artifacts(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "-q", "--json", "runs", "artifacts", recorded)
        assert result.exit_code == 0, result.output
        artifacts = {a["name"]: a for a in json.loads(result.stdout)}
        assert artifacts["out.txt"]["consumers"] == ["check"]
        assert artifacts["log.1"]["kind"] == "log"

    def test_resume_terminal_run(self, runner: CliRunner, recorded: str) -> None:
        result = invoke(runner, "-q", "--json", "runs", "resume", "demo.yaml", recorded)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["status"] == "succeeded"


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "stageflow" in result.output
