"""Configuration management for the workspace orchestrator."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.workspace-orchestrator/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "workspace-orchestrator.yaml"


class WorkspaceConfig(BaseModel):
    """Workspace root and manifest location."""

    root: str = "."
    manifest: str = "workspace.yaml"


class EnvironmentConfig(BaseModel):
    """Default environment roots applied to every skill without its own."""

    base_root: str = ""
    overlays: list[str] = Field(default_factory=list)
    env_file: str = "setup.env"
    inherit_ambient: bool = True


class RunnerConfig(BaseModel):
    """Subprocess runner configuration."""

    timeout: float | None = None
    terminate_grace_seconds: float = 5.0
    max_output_chars: int = 100000


class OrchestratorConfig(BaseModel):
    """Scheduling configuration."""

    # 0 means one slot per available CPU.
    concurrency: int = 0
    artifacts_dir: str = ""


class ClassifierRuleConfig(BaseModel):
    """Output pattern mapped to a failure reason."""

    pattern: str
    reason: str
    fail_on_match: bool = False


class SkillEnvironmentConfig(BaseModel):
    """Environment roots a skill must run under."""

    base_root: str
    overlays: list[str] = Field(default_factory=list)


class SkillConfig(BaseModel):
    """Skill definition; overrides the built-in entry with the same name."""

    name: str
    command: str | list[str]
    description: str = ""
    requires: list[str] | None = None
    success_exit_codes: list[int] = Field(default_factory=lambda: [0])
    classifiers: list[ClassifierRuleConfig] = Field(default_factory=list)
    environment: SkillEnvironmentConfig | None = None


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the workspace orchestrator."""

    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    skills: list[SkillConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="WSO_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        # Pydantic-settings applies WSO_* environment overrides on construction.
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()

    def resolved_manifest_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the workspace manifest relative to the workspace root."""
        raw = Path(self.workspace.manifest).expanduser()
        if raw.is_absolute():
            return raw
        return self.resolved_workspace_root(runtime_base) / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
