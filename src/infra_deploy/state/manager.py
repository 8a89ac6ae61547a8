"""Per-environment view of module state in a StateStore."""

import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from infra_deploy.state.lock import LockHandle, LockManager
from infra_deploy.state.models import EnvironmentSnapshot, Module, ModuleId, ModuleState, normalize_path
from infra_deploy.state.store import StateStore
from infra_deploy.utils.errors import ErrorContext, StateError, StateNamespaceError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)

# Top-level key namespaces used by deployment history
RESERVED_PREFIXES = ("history", "snapshots")


def validate_state_namespaces(prefixes: Dict[str, str]) -> None:
    """
    Check that no two environments can share a state key.

    Args:
        prefixes: Environment name -> state prefix

    Raises:
        StateNamespaceError: If two prefixes are equal or nested
    """
    normalized = {env: normalize_path(prefix) for env, prefix in prefixes.items()}
    for env, prefix in normalized.items():
        if not prefix:
            raise StateNamespaceError(f"Environment '{env}' has an empty state prefix")
        if prefix.split("/")[0] in RESERVED_PREFIXES:
            raise StateNamespaceError(
                f"State prefix of '{env}' ({prefix}) is inside a reserved namespace "
                f"({', '.join(RESERVED_PREFIXES)})"
            )

    envs = sorted(normalized)
    for i, first in enumerate(envs):
        for second in envs[i + 1:]:
            a, b = normalized[first], normalized[second]
            if a == b or a.startswith(b + "/") or b.startswith(a + "/"):
                raise StateNamespaceError(
                    f"State prefixes of '{first}' ({a}) and '{second}' ({b}) overlap",
                    suggestions=['Give every environment its own state_prefix']
                )


class StateManager:
    """Loads and saves module state within one environment's namespace."""

    STATE_FILE = "state.json"

    def __init__(
        self,
        store: StateStore,
        environment: str,
        state_prefix: str,
        lock_manager: LockManager,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize StateManager.

        Args:
            store: Backing state store
            environment: Environment name
            state_prefix: Key prefix isolating this environment
            lock_manager: Lock manager guarding state writes
            clock: Time source returning epoch seconds
        """
        self.store = store
        self.environment = environment
        self.state_prefix = normalize_path(state_prefix)
        self.lock_manager = lock_manager
        self.clock = clock

    def state_key(self, path: str) -> str:
        """State key of a module in this environment."""
        return f"{self.state_prefix}/{normalize_path(path)}/{self.STATE_FILE}"

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def load_module_state(self, path: str) -> ModuleState:
        """
        Load a module's state, or an empty state if it was never recorded.

        Raises:
            StateError: If the stored state is corrupted
        """
        key = self.state_key(path)
        current = self.store.get(key)
        if current is None:
            return ModuleState.empty(ModuleId(self.environment, normalize_path(path)))
        try:
            return ModuleState(**current.value)
        except ValidationError as e:
            raise StateError(
                f"Corrupted state for {self.environment}/{path}: {e}",
                context=ErrorContext(environment=self.environment, module=path, state_key=key),
                cause=e
            )

    def load_states(self, paths: Iterable[str]) -> Dict[str, ModuleState]:
        return {path: self.load_module_state(path) for path in paths}

    def save_module_state(self, handle: LockHandle, state: ModuleState) -> int:
        """
        Persist a module's state while holding its lock.

        Args:
            handle: Lock handle for the module's state key
            state: State to store

        Returns:
            New version of the state key

        Raises:
            StateError: If the handle does not guard this module
            LockLostError: If the lock is no longer held
        """
        key = self.state_key(state.path)
        if state.environment != self.environment or handle.key != key:
            raise StateError(
                f"Lock on {handle.key} does not cover {state.environment}/{state.path}",
                context=ErrorContext(environment=state.environment, module=state.path, state_key=key)
            )
        self.lock_manager.verify(handle)

        state = state.model_copy(update={'updated_at': self.now()})
        version = self.store.put(key, state.model_dump(mode='json'))
        logger.debug(
            f"Saved state ({state.lifecycle.value})",
            extra={'environment': self.environment, 'module_path': state.path, 'state_key': key}
        )
        return version

    def recorded_paths(self) -> List[str]:
        """Paths of every module with recorded state in this environment."""
        prefix = f"{self.state_prefix}/"
        suffix = f"/{self.STATE_FILE}"
        return [
            key[len(prefix):-len(suffix)]
            for key in self.store.list_keys(prefix)
            if key.endswith(suffix)
        ]

    def snapshot(self, modules: List[Module], taken_at: Optional[datetime] = None) -> EnvironmentSnapshot:
        """Capture module definitions and their current states."""
        return EnvironmentSnapshot(
            environment=self.environment,
            taken_at=taken_at or self.now(),
            modules=modules,
            states=self.load_states(module.path for module in modules)
        )
