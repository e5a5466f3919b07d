"""Configuration management for runguard using Pydantic."""

import getpass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from runguard.core.exceptions import ConfigError
from runguard.core.logging import LogLevel
from runguard.core.output import OutputFormat


class EnvSettings(BaseSettings):
    """Overrides read from RUNGUARD_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="RUNGUARD_", extra="ignore")

    state_dir: str | None = None
    procedures_dir: str | None = None
    operator: str | None = None


class RetryConfig(BaseModel):
    """Default retry budget for retryable steps."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)


class GateConfig(BaseModel):
    """Default polling policy for automatic gates."""

    initial_interval: float = Field(default=5.0, gt=0)
    max_interval: float = Field(default=60.0, gt=0)
    timeout: float = Field(default=600.0, gt=0)


class EngineConfig(BaseModel):
    """Workflow engine settings."""

    state_dir: str | None = None
    procedures_dir: str | None = None
    operator: str | None = None
    lock_mode: str = "fail_fast"  # fail_fast, block
    lock_wait_timeout: float = Field(default=300.0, ge=0)
    auto_rollback: bool = True
    retry: RetryConfig = Field(default_factory=RetryConfig)
    gate: GateConfig = Field(default_factory=GateConfig)

    @field_validator("lock_mode")
    @classmethod
    def validate_lock_mode(cls, v: str) -> str:
        if v not in ("fail_fast", "block"):
            raise ValueError("lock_mode must be 'fail_fast' or 'block'")
        return v

    def get_state_dir(self) -> Path:
        """Get the state directory from environment or config."""
        value = EnvSettings().state_dir or self.state_dir
        if value:
            return Path(value).expanduser()
        return Path.home() / ".runguard" / "state"

    def get_procedures_dir(self) -> Path | None:
        """Get the procedure definitions directory from environment or config."""
        value = EnvSettings().procedures_dir or self.procedures_dir
        return Path(value).expanduser() if value else None

    def get_operator(self) -> str:
        """Get the operator name recorded in the audit log."""
        operator = EnvSettings().operator or self.operator
        if operator:
            return operator
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return "unknown"


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class RunGuardConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    engine: EngineConfig = Field(default_factory=EngineConfig)


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["runguard.yaml", "runguard.yml", ".runguard.yaml", ".runguard.yml"]

    def __init__(self):
        self._config: RunGuardConfig | None = None

    def load(self, config_file: str | Path | None = None) -> RunGuardConfig:
        """Load configuration from files.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./runguard.yaml, searched upwards)
        3. User config (~/.runguard/config.yaml)

        Environment variables are applied lazily by the ``get_*`` accessors.

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".runguard" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged = self._merge_configs(configs)

        try:
            self._config = RunGuardConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


_config_loader = ConfigLoader()


def load_config(config_file: str | Path | None = None) -> RunGuardConfig:
    """Load runguard configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file)


def get_default_config() -> RunGuardConfig:
    """Get default configuration without loading from files."""
    return RunGuardConfig()
