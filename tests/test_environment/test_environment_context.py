from pathlib import Path

import pytest

from workspace_orchestrator.environment import EnvironmentContext, EnvironmentRoot
from workspace_orchestrator.exceptions import ConfigError, MissingRootError


def _root(path: Path, body: str, env_file: str = "setup.env") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / env_file).write_text(body, encoding="utf-8")
    return path


def test_last_overlay_wins_for_shared_variables():
    ctx = EnvironmentContext.build(
        EnvironmentRoot("base", {"A": "1"}),
        [EnvironmentRoot("overlay", {"A": "2", "B": "3"})],
        ambient={},
    )

    assert ctx["A"] == "2"
    assert ctx["B"] == "3"
    assert dict(ctx.defined) == {"A": "2", "B": "3"}


def test_overlays_apply_in_order():
    ctx = EnvironmentContext.build(
        EnvironmentRoot("base", {"A": "base"}),
        [
            EnvironmentRoot("first", {"A": "first", "B": "first"}),
            EnvironmentRoot("second", {"B": "second"}),
        ],
        ambient={},
    )

    assert ctx["A"] == "first"
    assert ctx["B"] == "second"
    assert [root.name for root in ctx.roots] == ["base", "first", "second"]


def test_ambient_variables_only_fill_gaps():
    ctx = EnvironmentContext.build(
        EnvironmentRoot("base", {"A": "root"}),
        ambient={"A": "ambient", "HOME": "/home/dev"},
    )

    assert ctx["A"] == "root"
    assert ctx["HOME"] == "/home/dev"
    assert "HOME" not in ctx.defined


def test_inherit_ambient_can_be_disabled():
    ctx = EnvironmentContext.build(
        EnvironmentRoot("base", {"A": "1"}),
        ambient={"HOME": "/home/dev"},
        inherit_ambient=False,
    )

    assert ctx.as_dict() == {"A": "1"}


def test_references_expand_against_earlier_layers():
    ctx = EnvironmentContext.build(
        EnvironmentRoot("base", {"PATH": "/opt/base/bin:${PATH}"}),
        [EnvironmentRoot("overlay", {"PATH": "/ws/install/bin:${PATH}", "EMPTY": "${UNDEFINED}"})],
        ambient={"PATH": "/usr/bin"},
    )

    assert ctx["PATH"] == "/ws/install/bin:/opt/base/bin:/usr/bin"
    assert ctx["EMPTY"] == ""


def test_build_reads_root_directories(tmp_path: Path):
    base = _root(tmp_path / "opt" / "toolchain", "export TOOLCHAIN_ROOT=/opt/toolchain\nLEVEL=base\n")
    overlay = _root(tmp_path / "ws" / "install", "LEVEL=overlay\nOVERLAY_ROOT='/ws/install'\n")

    ctx = EnvironmentContext.build(base, [overlay], ambient={})

    assert ctx["TOOLCHAIN_ROOT"] == "/opt/toolchain"
    assert ctx["LEVEL"] == "overlay"
    assert ctx["OVERLAY_ROOT"] == "/ws/install"
    assert ctx.roots[0].path == base.resolve()


def test_build_accepts_custom_env_file_name(tmp_path: Path):
    base = _root(tmp_path / "base", "A=1\n", env_file="local_setup.env")

    ctx = EnvironmentContext.build(base, ambient={}, env_file="local_setup.env")

    assert ctx["A"] == "1"


def test_missing_base_root_raises(tmp_path: Path):
    with pytest.raises(MissingRootError) as exc_info:
        EnvironmentContext.build(tmp_path / "does-not-exist")

    assert "does not exist" in str(exc_info.value)
    assert isinstance(exc_info.value, ConfigError)


def test_root_without_env_file_raises(tmp_path: Path):
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(MissingRootError) as exc_info:
        EnvironmentContext.build(empty)

    assert "setup.env" in exc_info.value.reason


def test_missing_overlay_raises(tmp_path: Path):
    base = _root(tmp_path / "base", "A=1\n")

    with pytest.raises(MissingRootError):
        EnvironmentContext.build(base, [tmp_path / "missing-overlay"])


def test_context_is_read_only():
    ctx = EnvironmentContext.build(EnvironmentRoot("base", {"A": "1"}), ambient={})
    snapshot = ctx.as_dict()
    snapshot["A"] = "changed"

    assert ctx["A"] == "1"
    with pytest.raises(TypeError):
        ctx["A"] = "2"  # type: ignore[index]
    with pytest.raises(TypeError):
        ctx.defined["A"] = "2"  # type: ignore[index]


def test_root_variables_are_frozen_copies():
    source = {"A": "1"}
    root = EnvironmentRoot("base", source)
    source["A"] = "2"

    assert root.variables["A"] == "1"


def test_ambient_context_uses_snapshot(monkeypatch):
    monkeypatch.setenv("WSO_AMBIENT_PROBE", "before")
    ctx = EnvironmentContext.ambient()
    monkeypatch.setenv("WSO_AMBIENT_PROBE", "after")

    assert ctx["WSO_AMBIENT_PROBE"] == "before"
    assert ctx.roots == ()
