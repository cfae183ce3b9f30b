"""Immutable execution environment built from a base root and ordered overlays.

A root is a directory holding an environment file (``setup.env`` by default)
with ``KEY=VALUE`` lines. Roots are layered in order: the base root first,
then each overlay, and the last root defining a variable wins. Variables that
no root defines are inherited from the ambient environment snapshot.

Values may reference variables resolved so far with ``${NAME}``, so an
overlay can extend a path list defined by the base root::

    PATH=/opt/overlay/bin:${PATH}

The context only records *what* environment a subprocess must see; it never
sources shell scripts or touches ``os.environ``.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from dotenv import dotenv_values

from workspace_orchestrator.exceptions import MissingRootError
from workspace_orchestrator.logging import get_logger

log = get_logger(__name__)

DEFAULT_ENV_FILE = "setup.env"

_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(frozen=True)
class EnvironmentRoot:
    """One layer of variables, read from a root directory or given in memory."""

    name: str
    variables: Mapping[str, str] = field(default_factory=dict)
    path: Path | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def from_path(cls, path: Path | str, env_file: str = DEFAULT_ENV_FILE) -> EnvironmentRoot:
        """Read a root directory (or an environment file given directly).

        Raises:
            MissingRootError: if the root does not exist or its environment
                file is missing or unreadable
        """
        root = Path(path).expanduser()
        if not root.exists():
            raise MissingRootError(str(path), "path does not exist")
        env_path = root if root.is_file() else root / env_file
        if not env_path.is_file():
            raise MissingRootError(str(path), f"no {env_file} found")
        try:
            raw = dotenv_values(env_path, interpolate=False)
        except (OSError, UnicodeDecodeError) as e:
            raise MissingRootError(str(path), str(e)) from e
        variables = {key: value for key, value in raw.items() if value is not None}
        return cls(name=str(root), variables=variables, path=root.resolve())


def _coerce_root(root: EnvironmentRoot | Path | str, env_file: str) -> EnvironmentRoot:
    if isinstance(root, EnvironmentRoot):
        return root
    return EnvironmentRoot.from_path(root, env_file=env_file)


def _expand(value: str, resolved: Mapping[str, str]) -> str:
    """Substitute ``${NAME}`` references; unknown names expand to an empty string."""
    return _REFERENCE_RE.sub(lambda match: resolved.get(match.group(1), ""), value)


class EnvironmentContext(Mapping[str, str]):
    """Flat, read-only key to value table handed to every subprocess."""

    def __init__(
        self,
        roots: Sequence[EnvironmentRoot],
        variables: Mapping[str, str],
        defined: Mapping[str, str],
    ):
        self._roots = tuple(roots)
        self._variables = MappingProxyType(dict(variables))
        self._defined = MappingProxyType(dict(defined))

    @classmethod
    def build(
        cls,
        base_root: EnvironmentRoot | Path | str,
        overlays: Sequence[EnvironmentRoot | Path | str] = (),
        *,
        ambient: Mapping[str, str] | None = None,
        inherit_ambient: bool = True,
        env_file: str = DEFAULT_ENV_FILE,
    ) -> EnvironmentContext:
        """Merge the base root and overlays into one environment.

        Args:
            base_root: Base toolchain root
            overlays: Overlay roots, applied in order after the base
            ambient: Ambient environment snapshot (defaults to the process environment)
            inherit_ambient: Whether variables no root defines fall back to ``ambient``
            env_file: Environment file name looked up inside root directories

        Raises:
            MissingRootError: if any root is missing or unreadable
        """
        roots = [_coerce_root(base_root, env_file)]
        roots.extend(_coerce_root(overlay, env_file) for overlay in overlays)

        ambient_snapshot = dict(os.environ if ambient is None else ambient) if inherit_ambient else {}
        merged: dict[str, str] = dict(ambient_snapshot)
        defined: dict[str, str] = {}
        for root in roots:
            for key, value in root.variables.items():
                expanded = _expand(str(value), merged)
                merged[key] = expanded
                defined[key] = expanded

        log.debug(
            "Environment context built",
            roots=[root.name for root in roots],
            defined=len(defined),
            inherited=len(merged) - len(defined),
        )
        return cls(roots, merged, defined)

    @classmethod
    def ambient(cls, ambient: Mapping[str, str] | None = None) -> EnvironmentContext:
        """Context with no roots: the ambient snapshot only."""
        snapshot = dict(os.environ if ambient is None else ambient)
        return cls((), snapshot, {})

    @property
    def roots(self) -> tuple[EnvironmentRoot, ...]:
        return self._roots

    @property
    def defined(self) -> Mapping[str, str]:
        """Variables set by the roots, excluding inherited ambient ones."""
        return self._defined

    def as_dict(self) -> dict[str, str]:
        """Copy of the full table, suitable for ``env=`` of a subprocess."""
        return dict(self._variables)

    def __getitem__(self, key: str) -> str:
        return self._variables[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def __repr__(self) -> str:
        names = ", ".join(root.name for root in self._roots) or "ambient"
        return f"EnvironmentContext(roots=[{names}], variables={len(self._variables)})"
