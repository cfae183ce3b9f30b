import json
from pathlib import Path

from workspace_orchestrator.artifacts import (
    ImplementationPlan,
    VerificationWalkthrough,
    WalkthroughStep,
    write_artifacts,
)


def _plan() -> ImplementationPlan:
    return ImplementationPlan(
        skill="build",
        description="Compile packages",
        requested_targets=("tool",),
        affected=("core", "tool"),
        order=("core", "docs", "tool"),
        to_run=("core", "tool"),
        unsupported=("docs",),
        concurrency_limit=4,
        timeout_per_package=600.0,
        environment_roots=("/opt/toolchain",),
    )


def _walkthrough() -> VerificationWalkthrough:
    return VerificationWalkthrough(
        skill="build",
        status="failure",
        working_directory="/home/dev/my ws",
        environment=(("TOOLCHAIN_ROOT", "/opt/toolchain"),),
        steps=(
            WalkthroughStep("core", "failure", ("colcon", "build", "--packages-select", "core"), "compiler error", 2, 1.5),
            WalkthroughStep("docs", "skipped-unsupported", (), "package does not support 'build'"),
            WalkthroughStep("tool", "skipped-upstream-failure", ("colcon", "build", "--packages-select", "tool"), "upstream failure: core"),
        ),
    )


def test_plan_markdown_lists_order_and_skips():
    text = _plan().to_markdown()

    assert text.startswith("# Implementation plan: `build`")
    assert "1. `core`\n2. `docs`\n3. `tool`" in text
    assert "- Timeout per package: 600s" in text
    assert "## Skipped (skill not supported)\n\n- `docs`" in text


def test_plan_json_is_machine_readable():
    payload = json.loads(_plan().to_json())

    assert payload["order"] == ["core", "docs", "tool"]
    assert payload["concurrency_limit"] == 4
    assert payload["created_at"]


def test_walkthrough_script_quotes_paths_and_values():
    script = _walkthrough().shell_script().splitlines()

    assert script[0] == "cd '/home/dev/my ws'"
    assert script[1] == "export TOOLCHAIN_ROOT=/opt/toolchain"
    assert script[2:] == [
        "colcon build --packages-select core",
        "colcon build --packages-select tool",
    ]


def test_walkthrough_markdown_has_results_table():
    text = _walkthrough().to_markdown()

    assert "Overall status: **failure**" in text
    assert "| `core` | failure | 2 | compiler error | `colcon build --packages-select core` |" in text
    assert "| `docs` | skipped-unsupported |  | package does not support 'build' |  |" in text


def test_walkthrough_json_contains_commands():
    payload = json.loads(_walkthrough().to_json())

    assert payload["environment"] == {"TOOLCHAIN_ROOT": "/opt/toolchain"}
    assert payload["steps"][0]["command"] == "colcon build --packages-select core"
    assert payload["steps"][0]["argv"][-1] == "core"
    assert payload["steps"][1]["command"] == ""


def test_write_artifacts_creates_markdown_and_json(tmp_path: Path):
    target = tmp_path / "nested" / "artifacts"

    written = write_artifacts(_plan(), _walkthrough(), target)

    assert {p.name for p in written} == {
        "implementation_plan.md",
        "implementation_plan.json",
        "verification_walkthrough.md",
        "verification_walkthrough.json",
    }
    assert all(p.is_file() for p in written)
    assert json.loads((target / "verification_walkthrough.json").read_text())["status"] == "failure"


def test_walkthrough_table_escapes_pipes_and_newlines_in_commands():
    walkthrough = VerificationWalkthrough(
        skill="test",
        status="failure",
        steps=(
            WalkthroughStep(
                "core",
                "failure",
                ("python", "-c", "import sys\nprint('a|b')"),
                "exit code 1",
                1,
            ),
        ),
    )

    rows = [line for line in walkthrough.to_markdown().splitlines() if line.startswith("| `core`")]

    assert len(rows) == 1
    assert rows[0].count(" | ") == 4
    assert "a\\|b" in rows[0]
