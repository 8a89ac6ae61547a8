"""State management module for module state, locks and the backing stores."""

from .lock import LockHandle, LockManager, LockRecord, LockRenewer, default_holder
from .manager import StateManager, validate_state_namespaces
from .models import (
    Dependency,
    DependencyEdge,
    EnvironmentSnapshot,
    LifecycleState,
    MockMergeStrategy,
    Module,
    ModuleId,
    ModuleState,
    Operation,
)
from .store import (
    MISSING,
    DynamoDBStateStore,
    InMemoryStateStore,
    LocalStateStore,
    StateStore,
    VersionedValue,
)

__all__ = [
    "Dependency",
    "DependencyEdge",
    "EnvironmentSnapshot",
    "LifecycleState",
    "MockMergeStrategy",
    "Module",
    "ModuleId",
    "ModuleState",
    "Operation",
    "StateStore",
    "VersionedValue",
    "MISSING",
    "InMemoryStateStore",
    "LocalStateStore",
    "DynamoDBStateStore",
    "LockManager",
    "LockHandle",
    "LockRecord",
    "LockRenewer",
    "default_holder",
    "StateManager",
    "validate_state_namespaces",
]
