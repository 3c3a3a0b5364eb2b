"""Configuration system for the issue pipeline.

This package provides type-safe configuration management using Pydantic.

Key Components:
    - PipelineSettings: Main configuration container with YAML loading support
    - StoreConfig: Issue Store location
    - RetryConfig: Implement/verify budget, worker and storage retry bounds
    - WorkerConfig: External agent command, timeout, per-phase options
    - RepositoryConfig: Target repository and commit settings
    - WorkflowConfig: Concurrency settings

Example:
    >>> from issue_pipeline.config import PipelineSettings
    >>> settings = PipelineSettings.from_yaml("pipeline.yaml")
    >>> settings.retry.max_implement_attempts
    3
"""

from issue_pipeline.config.settings import (
    PipelineSettings,
    RepositoryConfig,
    RetryConfig,
    StoreConfig,
    WorkerConfig,
    WorkflowConfig,
)

__all__ = [
    "PipelineSettings",
    "RepositoryConfig",
    "RetryConfig",
    "StoreConfig",
    "WorkerConfig",
    "WorkflowConfig",
]
