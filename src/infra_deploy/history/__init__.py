"""Append-only deployment history stored alongside module state."""

from .manager import DeploymentHistoryManager
from .models import (
    DeploymentRecord,
    DeploymentStatus,
    ModuleOutcomeRecord,
    RecordedOperation,
)
from .retention import RetentionManager, RetentionPolicy

__all__ = [
    "DeploymentHistoryManager",
    "DeploymentRecord",
    "DeploymentStatus",
    "ModuleOutcomeRecord",
    "RecordedOperation",
    "RetentionManager",
    "RetentionPolicy",
]
