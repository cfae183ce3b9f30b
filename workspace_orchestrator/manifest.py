"""Workspace manifest loading.

The workspace manifest is a YAML file listing every package explicitly::

    packages:
      - name: core
        path: src/core
        capabilities: [build, test, lint]
      - name: tool
        path: src/tool
        dependencies: [core]
        capabilities: [build, test]
      - manifest: vendor/extra/package.yaml

Entries with a ``manifest`` key point at a per-package YAML file holding the
same fields; its ``path`` defaults to the directory of that file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from workspace_orchestrator.exceptions import ManifestError
from workspace_orchestrator.logging import get_logger

log = get_logger(__name__)


class PackageManifest(BaseModel):
    """Read-only package record supplied by the manifest store."""

    name: str
    path: str = ""
    dependencies: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("package name must not be empty")
        return cleaned

    @field_validator("dependencies", "capabilities")
    @classmethod
    def _strip_entries(cls, value: list[str]) -> list[str]:
        return [str(item).strip() for item in value if str(item).strip()]


def _read_yaml(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ManifestError(str(path), "file not found") from e
    except (OSError, yaml.YAMLError) as e:
        raise ManifestError(str(path), str(e)) from e


def _parse_entry(entry: Any, source: Path, workspace_root: Path) -> PackageManifest:
    if not isinstance(entry, dict):
        raise ManifestError(str(source), f"package entry must be a mapping, got {type(entry).__name__}")

    if "manifest" in entry:
        package_file = (source.parent / str(entry["manifest"])).resolve()
        data = _read_yaml(package_file)
        if not isinstance(data, dict):
            raise ManifestError(str(package_file), "package manifest must be a mapping")
        data = dict(data)
        if not data.get("path"):
            try:
                data["path"] = str(package_file.parent.relative_to(workspace_root))
            except ValueError:
                data["path"] = str(package_file.parent)
        source = package_file
        entry = data

    try:
        return PackageManifest(**entry)
    except ValidationError as e:
        raise ManifestError(str(source), str(e)) from e


def load_workspace_manifest(path: Path | str, workspace_root: Path | str | None = None) -> list[PackageManifest]:
    """Load and validate every package record of a workspace manifest.

    Args:
        path: Workspace manifest file
        workspace_root: Root package paths are relative to (defaults to the manifest directory)

    Returns:
        Package records in file order

    Raises:
        ManifestError: if a file is missing, unparseable, or a record is invalid
    """
    manifest_path = Path(path).expanduser().resolve()
    root = Path(workspace_root).expanduser().resolve() if workspace_root else manifest_path.parent
    data = _read_yaml(manifest_path)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestError(str(manifest_path), "top level must be a mapping")

    entries = data.get("packages") or []
    if not isinstance(entries, list):
        raise ManifestError(str(manifest_path), "'packages' must be a list")

    manifests = [_parse_entry(entry, manifest_path, root) for entry in entries]
    log.debug("Workspace manifest loaded", path=str(manifest_path), packages=len(manifests))
    return manifests
