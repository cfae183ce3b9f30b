"""Custom exceptions for the workspace orchestrator."""


class WorkspaceOrchestratorError(Exception):
    """Base exception for the workspace orchestrator."""

    pass


class ConfigError(WorkspaceOrchestratorError):
    """Fatal configuration errors, raised before any skill is executed."""

    pass


class ManifestError(ConfigError):
    """Workspace manifest could not be read or validated."""

    def __init__(self, path: str, message: str):
        super().__init__(f"Invalid manifest '{path}': {message}")
        self.path = path


class UnknownPackageError(ConfigError):
    """A dependency or target references a package that does not exist."""

    def __init__(self, package_name: str, referenced_by: str | None = None):
        if referenced_by:
            message = f"Package '{referenced_by}' depends on unknown package: {package_name}"
        else:
            message = f"Unknown package: {package_name}"
        super().__init__(message)
        self.package_name = package_name
        self.referenced_by = referenced_by


class DuplicatePackageError(ConfigError):
    """Two manifests declare the same package name."""

    def __init__(self, package_name: str):
        super().__init__(f"Package declared more than once: {package_name}")
        self.package_name = package_name


class DependencyCycleError(ConfigError):
    """The package dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle = list(cycle)


class UnknownSkillError(ConfigError):
    """Skill not found in registry."""

    def __init__(self, skill_name: str):
        super().__init__(f"Skill not found: {skill_name}")
        self.skill_name = skill_name


class DuplicateSkillError(ConfigError):
    """Skill name already registered."""

    def __init__(self, skill_name: str):
        super().__init__(f"Skill already registered: {skill_name}")
        self.skill_name = skill_name


class MissingRootError(ConfigError):
    """Environment root is missing or has no readable environment file."""

    def __init__(self, root: str, reason: str):
        super().__init__(f"Environment root '{root}' unusable: {reason}")
        self.root = root
        self.reason = reason


class OrchestratorStateError(WorkspaceOrchestratorError):
    """Orchestrator used outside of its single-invocation lifecycle."""

    pass
