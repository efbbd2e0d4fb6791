"""Integration tests for the taskdag CLI."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskdag import __version__
from taskdag.cli.main import app

pytestmark = pytest.mark.integration

runner = CliRunner()


@pytest.fixture(autouse=True)
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the store and session directory at ``tmp_path``."""
    monkeypatch.setenv("TASKDAG_STORE_PATH", str(tmp_path / "tasks.json"))
    monkeypatch.setenv("TASKDAG_SESSION_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("TASKDAG_LOG_LEVEL", "CRITICAL")
    monkeypatch.delenv("TASKDAG_ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return tmp_path


def test_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_decompose_json(workspace: Path, login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request])

    assert result.exit_code == 0
    output = json.loads(result.stdout)
    assert output["_meta"]["phase"] == "tasks"
    assert [t["id"] for t in output["tasks"]] == ["T1", "T2", "T3", "T4", "T5"]
    assert output["hitlGates"] == []

    stored = json.loads((workspace / "tasks.json").read_text())
    assert stored["sequence"]["counter"] == 5
    assert len(stored["tasks"]) == 5


def test_decompose_human(login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "--format", "human"])

    assert result.exit_code == 0
    assert "Parallel Groups" in result.stdout
    assert "T5" in result.stdout


def test_request_from_file(workspace: Path) -> None:
    request_file = workspace / "request.md"
    request_file.write_text("Fix typo in README\n")

    result = runner.invoke(app, ["decompose", str(request_file)])

    assert result.exit_code == 0
    output = json.loads(result.stdout)
    assert output["tasks"][0]["title"] == "Fix typo in README"


def test_stop_after_phase(login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "--phase", "dag"])

    assert result.exit_code == 0
    output = json.loads(result.stdout)
    assert output["_meta"]["phase"] == "dag"
    assert output["dag"]["parallelGroups"][0] == ["G2"]
    assert "tasks" not in output


def test_dry_run(workspace: Path, login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "--dry-run"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["dryRun"] is True
    assert not (workspace / "tasks.json").exists()


def test_store_option(workspace: Path, login_request: str) -> None:
    store = workspace / "other" / "tasks.json"

    result = runner.invoke(app, ["decompose", login_request, "--store", str(store)])

    assert result.exit_code == 0
    assert len(json.loads(store.read_text())["tasks"]) == 5
    assert not (workspace / "tasks.json").exists()


def test_empty_request() -> None:
    result = runner.invoke(app, ["decompose", "   "])

    assert result.exit_code == 2
    error = json.loads(result.stdout)["error"]
    assert error["name"] == "InputError"
    assert error["phase"] == "scope"


def test_ambiguous_request_needs_decision() -> None:
    result = runner.invoke(app, ["decompose", "Cache sessions using Redis or Postgres"])

    assert result.exit_code == 30
    output = json.loads(result.stdout)
    assert output["_meta"]["phase"] == "scope"
    assert output["error"]["details"]["hitlGates"][0]["id"] == "H1"


def test_missing_parent(login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "--parent", "T42"])

    assert result.exit_code == 10
    assert json.loads(result.stdout)["error"]["reference"] == "T42"


def test_error_in_human_format(login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "-p", "T42", "-f", "human"])

    assert result.exit_code == 10
    assert "ParentNotFoundError" in result.output


def test_agent_requires_api_key(login_request: str) -> None:
    result = runner.invoke(app, ["decompose", login_request, "--agent"])

    assert result.exit_code == 2
    assert "ANTHROPIC_API_KEY" in json.loads(result.stdout)["error"]["message"]


def test_bad_context_file(workspace: Path, login_request: str) -> None:
    context = workspace / "context.json"
    context.write_text("[1, 2]")

    result = runner.invoke(app, ["decompose", login_request, "--context", str(context)])

    assert result.exit_code == 2
