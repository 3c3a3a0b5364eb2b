"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the issue store, retry and
escalation bounds, phase workers, the target repository and concurrency.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_pipeline.enums import WORKER_PHASES, Phase
from issue_pipeline.exceptions import ConfigurationError

DEFAULT_AGENT_COMMAND = ["claude", "--print", "--dangerously-skip-permissions"]


class StoreConfig(BaseModel):
    """Issue Store configuration."""

    root: str = Field(default=".pipeline/issues", description="Root directory of the issue store")


class RetryConfig(BaseModel):
    """Retry and escalation bounds."""

    max_implement_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Maximum IMPLEMENT attempts in the implement/verify loop before escalation",
    )
    worker_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Invocation attempts per phase for transient worker failures"
    )
    backoff_factor: float = Field(default=2.0, ge=0.0, description="Exponential backoff base in seconds")
    backoff_max: float = Field(default=60.0, ge=0.0, description="Upper bound for a single backoff delay")
    storage_stall_after: int = Field(
        default=5,
        ge=1,
        description="Consecutive storage failures after which the issue is marked stalled",
    )


class WorkerConfig(BaseModel):
    """Phase worker configuration."""

    command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_AGENT_COMMAND),
        min_length=1,
        description="External agent command; the phase prompt is passed on stdin",
    )
    timeout: float | None = Field(default=600.0, gt=0, description="Invocation timeout in seconds (None disables)")
    working_directory: str | None = Field(
        default=None, description="Directory the agent runs in (defaults to the repository path)"
    )
    phase_options: dict[Phase, dict[str, Any]] = Field(
        default_factory=dict, description="Extra options passed to the worker of each phase"
    )

    @field_validator("phase_options")
    @classmethod
    def validate_phase_options(cls, value: dict[Phase, dict[str, Any]]) -> dict[Phase, dict[str, Any]]:
        """Only worker phases take options."""
        invalid = [phase.value for phase in value if phase not in WORKER_PHASES]
        if invalid:
            raise ValueError(f"phase_options given for phases without a worker: {', '.join(invalid)}")
        return value


class RepositoryConfig(BaseModel):
    """Target repository configuration."""

    path: str = Field(default=".", description="Path to the git working tree")
    issues_directory: str = Field(
        default="issues", description="Directory (relative to path) holding <issue>/problem.md files"
    )
    commit_enabled: bool = Field(default=True, description="Create a commit when an issue is resolved")
    commit_type: str = Field(
        default="fix",
        pattern=r"^[a-z]+$",
        description="Default conventional-commit type prefix",
    )


class WorkflowConfig(BaseModel):
    """Workflow behavior configuration."""

    max_concurrent_issues: int = Field(default=3, ge=1, le=32, description="Issues processed concurrently")


class PipelineSettings(BaseSettings):
    """Main pipeline settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISSUE_PIPELINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)

    @property
    def store_dir(self) -> Path:
        """Get store root as Path object."""
        return Path(self.store.root)

    @property
    def repo_path(self) -> Path:
        """Repository root, resolved against the working directory at access time."""
        return Path(self.repository.path).resolve()

    @property
    def issues_dir(self) -> Path:
        """Directory of problem statements inside the repository."""
        return self.repo_path / self.repository.issues_directory

    @classmethod
    def from_yaml(cls, config_path: str) -> PipelineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            PipelineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        lines = content.split("\n")
        return "\n".join(process_line(line) for line in lines)
