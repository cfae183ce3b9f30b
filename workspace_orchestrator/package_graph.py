"""Package dependency graph with deterministic topological ordering.

Nodes are packages, edges are declared build/test dependencies. The graph is
validated on load: unknown references, duplicate names and cycles are fatal
configuration errors.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Any

from pydantic import ValidationError

from workspace_orchestrator.exceptions import (
    DependencyCycleError,
    DuplicatePackageError,
    ManifestError,
    UnknownPackageError,
)
from workspace_orchestrator.logging import get_logger
from workspace_orchestrator.manifest import PackageManifest, load_workspace_manifest

log = get_logger(__name__)


@dataclass(frozen=True)
class Package:
    """Unit of source code with declared dependencies and capabilities."""

    name: str
    dependencies: frozenset[str] = field(default_factory=frozenset)
    capabilities: frozenset[str] = field(default_factory=frozenset)
    path: str = ""

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities


PackageRef = str | Package


def _ref_name(ref: PackageRef) -> str:
    return ref.name if isinstance(ref, Package) else str(ref)


class PackageGraph:
    """Immutable DAG of packages."""

    def __init__(self, packages: Mapping[str, Package]):
        self._packages: dict[str, Package] = dict(packages)
        self._dependents: dict[str, set[str]] = {name: set() for name in self._packages}
        for package in self._packages.values():
            for dep in package.dependencies:
                self._dependents.setdefault(dep, set()).add(package.name)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, manifests: Iterable[PackageManifest | Mapping[str, Any]]) -> PackageGraph:
        """Build and validate the graph from manifest records.

        Raises:
            DuplicatePackageError: if two records share a name
            UnknownPackageError: if a dependency names an unknown package
            DependencyCycleError: if the dependencies contain a cycle
        """
        packages: dict[str, Package] = {}
        for raw in manifests:
            try:
                record = raw if isinstance(raw, PackageManifest) else PackageManifest(**raw)
            except ValidationError as e:
                raise ManifestError("<inline>", str(e)) from e
            if record.name in packages:
                raise DuplicatePackageError(record.name)
            packages[record.name] = Package(
                name=record.name,
                dependencies=frozenset(record.dependencies),
                capabilities=frozenset(record.capabilities),
                path=record.path,
            )

        for package in sorted(packages.values(), key=lambda p: p.name):
            for dep in sorted(package.dependencies):
                if dep not in packages:
                    raise UnknownPackageError(dep, referenced_by=package.name)

        names = sorted(packages)
        order = cls._topological_sort(names, {name: packages[name].dependencies for name in names})
        if len(order) < len(names):
            ordered = set(order)
            leftovers = [name for name in names if name not in ordered]
            raise DependencyCycleError(cls._find_cycle(leftovers, packages))

        log.debug("Package graph loaded", packages=len(packages))
        return cls(packages)

    @classmethod
    def from_manifest_file(cls, path: Path | str, workspace_root: Path | str | None = None) -> PackageGraph:
        """Load the workspace manifest file and build the graph from it."""
        return cls.load(load_workspace_manifest(path, workspace_root))

    # ------------------------------------------------------------------
    # Topological sort (Kahn's algorithm)
    # ------------------------------------------------------------------

    @staticmethod
    def _topological_sort(
        names: list[str],
        dependencies: Mapping[str, Iterable[str]],
    ) -> list[str]:
        """Return stable topological order; cyclic nodes are left out."""
        id_set = set(names)
        dep_map: dict[str, set[str]] = {name: set() for name in names}
        reverse_map: dict[str, set[str]] = {name: set() for name in names}
        for name in names:
            for dep in dependencies.get(name, ()):
                if dep not in id_set:
                    continue
                dep_map[name].add(dep)
                reverse_map[dep].add(name)

        # Start with zero-dependency nodes, sorted for stability.
        ready = sorted(name for name, deps in dep_map.items() if not deps)
        order: list[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in sorted(reverse_map[current]):
                pending = dep_map[dependent]
                pending.discard(current)
                if not pending:
                    ready.append(dependent)
            ready.sort()
        return order

    @staticmethod
    def _find_cycle(candidates: list[str], packages: Mapping[str, Package]) -> list[str]:
        """Return one concrete cycle among nodes Kahn's algorithm could not order."""
        candidate_set = set(candidates)
        for start in candidates:
            path: list[str] = [start]
            on_path = {start}
            stack: list[Iterator[str]] = [
                iter(sorted(d for d in packages[start].dependencies if d in candidate_set))
            ]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue
                if nxt in on_path:
                    return path[path.index(nxt):] + [nxt]
                path.append(nxt)
                on_path.add(nxt)
                stack.append(iter(sorted(d for d in packages[nxt].dependencies if d in candidate_set)))
        return sorted(candidates)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, name: PackageRef) -> Package:
        """Return a package by name.

        Raises:
            UnknownPackageError: if not found
        """
        key = _ref_name(name)
        package = self._packages.get(key)
        if package is None:
            raise UnknownPackageError(key)
        return package

    @property
    def names(self) -> list[str]:
        return sorted(self._packages)

    def __contains__(self, name: object) -> bool:
        if isinstance(name, Package):
            return name.name in self._packages
        return name in self._packages

    def __iter__(self) -> Iterator[Package]:
        return iter(self._packages[name] for name in self.names)

    def __len__(self) -> int:
        return len(self._packages)

    def dependents_of(self, name: PackageRef) -> set[Package]:
        """Packages that directly depend on ``name``."""
        package = self.get(name)
        return {self._packages[dep] for dep in self._dependents.get(package.name, set())}

    def dependency_closure(self, targets: Iterable[PackageRef]) -> set[str]:
        """Names of the targets plus all their transitive dependencies."""
        closure: set[str] = set()
        stack = [self.get(ref).name for ref in targets]
        while stack:
            name = stack.pop()
            if name in closure:
                continue
            closure.add(name)
            stack.extend(self._packages[name].dependencies - closure)
        return closure

    def topological_order(self, targets: Iterable[PackageRef] | None = None) -> list[Package]:
        """Targets plus transitive dependencies, dependency-first.

        Independent packages are ordered lexicographically by name. ``None``
        selects the whole workspace.
        """
        closure = self.dependency_closure(self.names if targets is None else targets)
        names = sorted(closure)
        order = self._topological_sort(
            names,
            {name: self._packages[name].dependencies for name in names},
        )
        return [self._packages[name] for name in order]

    def affected_by(self, changed: Iterable[PackageRef]) -> set[Package]:
        """Changed packages plus everything that transitively depends on them."""
        affected: set[str] = set()
        stack = [self.get(ref).name for ref in changed]
        while stack:
            name = stack.pop()
            if name in affected:
                continue
            affected.add(name)
            stack.extend(self._dependents.get(name, set()) - affected)
        return {self._packages[name] for name in affected}

    def packages_for_paths(
        self,
        paths: Iterable[Path | str],
        workspace_root: Path | str | None = None,
    ) -> set[Package]:
        """Map changed file paths to the packages containing them.

        The package with the deepest matching ``path`` wins; files outside
        every package are ignored.
        """
        root = Path(workspace_root).expanduser().resolve() if workspace_root else None
        located = [
            (PurePath(package.path).parts, package)
            for package in self._packages.values()
            if package.path and package.path != "."
        ]
        matches: set[Package] = set()
        for raw in paths:
            candidate = Path(raw)
            if root is not None and candidate.is_absolute():
                try:
                    candidate = candidate.resolve().relative_to(root)
                except ValueError:
                    continue
            parts = PurePath(candidate).parts
            best: Package | None = None
            best_depth = 0
            for prefix, package in located:
                if len(prefix) > best_depth and parts[: len(prefix)] == prefix:
                    best, best_depth = package, len(prefix)
            if best is not None:
                matches.add(best)
        return matches
