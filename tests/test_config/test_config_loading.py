from pathlib import Path

import pytest
import yaml

from workspace_orchestrator.config import LOCAL_CONFIG_FILENAME, Config, get_config, set_config


def test_defaults():
    cfg = Config()

    assert cfg.workspace.manifest == "workspace.yaml"
    assert cfg.environment.env_file == "setup.env"
    assert cfg.environment.inherit_ambient is True
    assert cfg.runner.timeout is None
    assert cfg.orchestrator.concurrency == 0
    assert cfg.skills == []
    assert cfg.logging.level == "INFO"


def test_from_yaml_reads_nested_sections(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "workspace": {"root": str(tmp_path), "manifest": "pkgs.yaml"},
                "environment": {"base_root": "/opt/toolchain", "overlays": ["install"]},
                "runner": {"timeout": 120},
                "skills": [{"name": "format", "command": ["clang-format", "{path}"], "requires": ["lint"]}],
            }
        ),
        encoding="utf-8",
    )

    cfg = Config.from_yaml(path)

    assert cfg.runner.timeout == 120
    assert cfg.environment.overlays == ["install"]
    assert cfg.skills[0].command == ["clang-format", "{path}"]
    assert cfg.resolved_manifest_path() == tmp_path.resolve() / "pkgs.yaml"


def test_missing_yaml_falls_back_to_defaults(tmp_path: Path):
    assert Config.from_yaml(tmp_path / "absent.yaml").runner.terminate_grace_seconds == 5.0


def test_local_config_file_takes_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    (tmp_path / LOCAL_CONFIG_FILENAME).write_text("orchestrator:\n  concurrency: 3\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    assert Config.resolve_default_config_path() == tmp_path / LOCAL_CONFIG_FILENAME
    assert Config.load().orchestrator.concurrency == 3


def test_environment_variables_fill_nested_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WSO_RUNNER__TIMEOUT", "42.5")
    monkeypatch.setenv("WSO_LOGGING__LEVEL", "DEBUG")

    cfg = Config()

    assert cfg.runner.timeout == 42.5
    assert cfg.logging.level == "DEBUG"


def test_relative_workspace_root_is_anchored(tmp_path: Path):
    cfg = Config(workspace={"root": "ws"})

    assert cfg.resolved_workspace_root(tmp_path) == (tmp_path / "ws").resolve()


def test_save_round_trips_through_yaml(tmp_path: Path):
    path = tmp_path / "saved.yaml"
    Config(orchestrator={"concurrency": 2, "artifacts_dir": "out"}).save(path)

    cfg = Config.from_yaml(path)

    assert cfg.orchestrator.concurrency == 2
    assert cfg.orchestrator.artifacts_dir == "out"


def test_global_config_accessors():
    cfg = Config(orchestrator={"concurrency": 7})
    set_config(cfg)
    try:
        assert get_config() is cfg
    finally:
        set_config(Config())
