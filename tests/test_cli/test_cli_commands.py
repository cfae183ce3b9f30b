import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from workspace_orchestrator import cli
from workspace_orchestrator.orchestrator import RunStatus

runner = CliRunner()

FAIL_CORE = "import sys; sys.exit(1 if '{package}' == 'core' else 0)"


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def config_file(tmp_path: Path):
    """Write a workspace manifest and a config pointing at it; returns a factory."""

    def _write(code: str = "print('{package}')", extra_packages=()) -> str:
        ws = tmp_path / "ws"
        ws.mkdir(exist_ok=True)
        packages = [
            {"name": "core", "path": "src/core", "capabilities": ["build"]},
            {"name": "tool", "path": "src/tool", "dependencies": ["core"], "capabilities": ["build"]},
            {"name": "other", "path": "src/other", "capabilities": ["build"]},
            *extra_packages,
        ]
        (ws / "workspace.yaml").write_text(yaml.safe_dump({"packages": packages}), encoding="utf-8")
        config = {
            "workspace": {"root": str(ws)},
            "orchestrator": {"concurrency": 2},
            "skills": [{"name": "build", "command": [sys.executable, "-c", code]}],
        }
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(config), encoding="utf-8")
        return str(path)

    return _write


def test_run_success_exits_zero(config_file):
    result = runner.invoke(cli.app, ["run", "build", "tool", "-c", config_file()])

    assert result.exit_code == 0, result.output
    assert "build: success" in result.output


def test_run_failure_exits_one(config_file):
    result = runner.invoke(cli.app, ["run", "build", "-c", config_file(FAIL_CORE)])

    assert result.exit_code == 1, result.output
    assert "skipped-upstream-failure" in result.output


def test_run_unknown_skill_exits_two(config_file):
    result = runner.invoke(cli.app, ["run", "deploy", "-c", config_file()])

    assert result.exit_code == 2
    assert "Skill not found: deploy" in result.output


def test_run_unknown_package_exits_two(config_file):
    result = runner.invoke(cli.app, ["run", "build", "ghost", "-c", config_file()])

    assert result.exit_code == 2


def test_run_with_cycle_exits_two(config_file):
    path = config_file(extra_packages=[{"name": "loop", "dependencies": ["loop"]}])

    result = runner.invoke(cli.app, ["run", "build", "-c", path])

    assert result.exit_code == 2
    assert "cycle" in result.output


def test_run_changed_files_select_affected_packages(config_file):
    result = runner.invoke(
        cli.app,
        ["run", "build", "--changed", "src/core/lib.cpp", "--json", "-c", config_file()],
    )

    assert result.exit_code == 0, result.output
    assert '"package": "tool"' in result.output
    assert '"package": "other"' not in result.output


def test_run_changed_outside_packages_is_a_no_op(config_file):
    result = runner.invoke(cli.app, ["run", "build", "--changed", "README.md", "-c", config_file()])

    assert result.exit_code == 0
    assert "nothing to do" in result.output


def test_run_writes_artifacts(config_file, tmp_path: Path):
    artifacts = tmp_path / "out"

    result = runner.invoke(
        cli.app,
        ["run", "build", "core", "--artifacts-dir", str(artifacts), "-c", config_file()],
    )

    assert result.exit_code == 0, result.output
    assert (artifacts / "verification_walkthrough.md").is_file()


def test_plan_prints_markdown(config_file):
    result = runner.invoke(cli.app, ["plan", "build", "tool", "-c", config_file()])

    assert result.exit_code == 0, result.output
    assert "Implementation plan: `build`" in result.output
    assert "1. `core`" in result.output


def test_graph_lists_packages(config_file):
    result = runner.invoke(cli.app, ["graph", "-c", config_file()])

    assert result.exit_code == 0, result.output
    for name in ("core", "tool", "other"):
        assert name in result.output


def test_skills_lists_catalog(config_file):
    result = runner.invoke(cli.app, ["skills", "-c", config_file()])

    assert result.exit_code == 0, result.output
    for name in ("build", "test", "lint", "deps"):
        assert name in result.output


def test_exit_code_mapping():
    assert cli.exit_code_for(RunStatus.SUCCESS) == 0
    assert cli.exit_code_for(RunStatus.NO_OP) == 0
    assert cli.exit_code_for(RunStatus.FAILURE) == 1
    assert cli.exit_code_for(RunStatus.CANCELLED) == 130
