"""Configuration management for infra-deploy."""

from .models import (
    BackendConfig,
    EnvironmentConfig,
    ExecutionConfig,
    LockingConfig,
    ProjectConfig,
)
from .discovery import ModuleDiscovery
from .parser import Config, DEFAULT_CONFIG_FILE

__all__ = [
    "BackendConfig",
    "EnvironmentConfig",
    "ExecutionConfig",
    "LockingConfig",
    "ProjectConfig",
    "ModuleDiscovery",
    "Config",
    "DEFAULT_CONFIG_FILE",
]
