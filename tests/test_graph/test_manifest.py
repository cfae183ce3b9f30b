from pathlib import Path

import pytest

from workspace_orchestrator.exceptions import ManifestError
from workspace_orchestrator.manifest import load_workspace_manifest
from workspace_orchestrator.package_graph import PackageGraph


def test_load_workspace_manifest_reads_inline_and_nested_packages(tmp_path: Path):
    nested = tmp_path / "vendor" / "extra"
    nested.mkdir(parents=True)
    (nested / "package.yaml").write_text(
        "name: extra\ndependencies: [core]\ncapabilities: [build]\n",
        encoding="utf-8",
    )
    manifest = tmp_path / "workspace.yaml"
    manifest.write_text(
        (
            "packages:\n"
            "  - name: core\n"
            "    path: src/core\n"
            "    capabilities: [build, test, lint]\n"
            "  - manifest: vendor/extra/package.yaml\n"
        ),
        encoding="utf-8",
    )

    records = load_workspace_manifest(manifest)

    assert [r.name for r in records] == ["core", "extra"]
    assert records[0].capabilities == ["build", "test", "lint"]
    assert records[1].dependencies == ["core"]
    assert records[1].path == str(Path("vendor") / "extra")


def test_graph_from_manifest_file(tmp_path: Path):
    manifest = tmp_path / "workspace.yaml"
    manifest.write_text(
        (
            "packages:\n"
            "  - name: tool\n"
            "    dependencies: [core]\n"
            "  - name: core\n"
        ),
        encoding="utf-8",
    )

    graph = PackageGraph.from_manifest_file(manifest)

    assert [p.name for p in graph.topological_order()] == ["core", "tool"]


def test_empty_manifest_yields_no_packages(tmp_path: Path):
    manifest = tmp_path / "workspace.yaml"
    manifest.write_text("", encoding="utf-8")

    assert load_workspace_manifest(manifest) == []


def test_missing_manifest_raises(tmp_path: Path):
    with pytest.raises(ManifestError) as exc_info:
        load_workspace_manifest(tmp_path / "nope.yaml")

    assert "file not found" in str(exc_info.value)


def test_invalid_entries_raise(tmp_path: Path):
    manifest = tmp_path / "workspace.yaml"
    manifest.write_text("packages:\n  - just-a-string\n", encoding="utf-8")

    with pytest.raises(ManifestError):
        load_workspace_manifest(manifest)

    manifest.write_text("packages:\n  - path: src/nameless\n", encoding="utf-8")

    with pytest.raises(ManifestError):
        load_workspace_manifest(manifest)


def test_unparseable_yaml_raises(tmp_path: Path):
    manifest = tmp_path / "workspace.yaml"
    manifest.write_text("packages: [unclosed\n", encoding="utf-8")

    with pytest.raises(ManifestError):
        load_workspace_manifest(manifest)
