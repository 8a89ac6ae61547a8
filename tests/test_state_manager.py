"""
Tests for StateManager and state namespace validation.
"""

from datetime import datetime, timezone

import pytest

from infra_deploy.state.lock import LockManager
from infra_deploy.state.manager import StateManager, validate_state_namespaces
from infra_deploy.state.models import LifecycleState, ModuleState, Operation
from infra_deploy.utils.errors import LockLostError, StateError, StateNamespaceError

from tests.conftest import make_modules


@pytest.fixture
def locks(store, clock):
    return LockManager(store, clock=clock, default_ttl=60)


@pytest.fixture
def manager(store, locks, clock):
    return StateManager(store, "dev", "envs/dev", locks, clock=clock)


def _applied(path, **outputs):
    return ModuleState(
        environment="dev",
        path=path,
        lifecycle=LifecycleState.APPLIED,
        outputs=outputs,
        last_operation=Operation.APPLY,
    )


class TestStateKeys:
    """Key layout inside an environment's namespace."""

    def test_state_key(self, manager):
        assert manager.state_key("network/vpc") == "envs/dev/network/vpc/state.json"
        assert manager.state_key("./network/vpc/") == "envs/dev/network/vpc/state.json"

    def test_prefix_is_normalized(self, store, locks):
        manager = StateManager(store, "dev", "/envs/dev/", locks)
        assert manager.state_key("vpc") == "envs/dev/vpc/state.json"


class TestLoadSave:
    """Reading and writing module state under a lock."""

    def test_missing_state_is_unplanned(self, manager):
        state = manager.load_module_state("vpc")
        assert state.lifecycle == LifecycleState.UNPLANNED
        assert state.outputs == {}

    def test_save_and_load(self, manager, locks, clock):
        handle = locks.acquire(manager.state_key("vpc"), "tester")
        manager.save_module_state(handle, _applied("vpc", subnet_id="subnet-123"))

        state = manager.load_module_state("vpc")
        assert state.is_applied
        assert state.outputs == {"subnet_id": "subnet-123"}
        assert state.updated_at == datetime.fromtimestamp(clock(), tz=timezone.utc)

    def test_save_requires_matching_lock(self, manager, locks):
        handle = locks.acquire(manager.state_key("db"), "tester")
        with pytest.raises(StateError, match="does not cover"):
            manager.save_module_state(handle, _applied("vpc"))

    def test_save_rejects_other_environment(self, manager, locks):
        handle = locks.acquire(manager.state_key("vpc"), "tester")
        state = ModuleState(environment="prod", path="vpc")
        with pytest.raises(StateError):
            manager.save_module_state(handle, state)

    def test_save_after_lock_lost(self, manager, locks):
        handle = locks.acquire(manager.state_key("vpc"), "tester")
        locks.acquire(manager.state_key("vpc"), "intruder", force=True)
        with pytest.raises(LockLostError):
            manager.save_module_state(handle, _applied("vpc"))
        assert manager.load_module_state("vpc").lifecycle == LifecycleState.UNPLANNED

    def test_corrupted_state(self, manager, store):
        store.put(manager.state_key("vpc"), {"environment": "dev", "path": "vpc", "lifecycle": "bogus"})
        with pytest.raises(StateError, match="Corrupted"):
            manager.load_module_state("vpc")

    def test_recorded_paths_ignores_locks(self, manager, locks):
        for path in ("vpc", "network/subnets"):
            handle = locks.acquire(manager.state_key(path), "tester")
            manager.save_module_state(handle, _applied(path))
        assert manager.recorded_paths() == ["network/subnets", "vpc"]

    def test_snapshot(self, manager, locks):
        handle = locks.acquire(manager.state_key("vpc"), "tester")
        manager.save_module_state(handle, _applied("vpc", subnet_id="s"))

        snapshot = manager.snapshot(make_modules("dev"))
        assert snapshot.environment == "dev"
        assert [m.path for m in snapshot.modules] == ["vpc", "compute", "db"]
        assert snapshot.applied_paths() == ["vpc"]
        assert snapshot.states["compute"].lifecycle == LifecycleState.UNPLANNED


class TestNamespaces:
    """Environment state prefixes must be disjoint."""

    def test_disjoint_prefixes(self):
        validate_state_namespaces({"dev": "envs/dev", "prod": "envs/prod", "devx": "envs/devx"})

    @pytest.mark.parametrize("prefixes", [
        {"dev": "envs/dev", "prod": "envs/dev"},
        {"dev": "envs", "prod": "envs/prod"},
        {"dev": "envs/dev/", "prod": "./envs/dev"},
    ])
    def test_overlap(self, prefixes):
        with pytest.raises(StateNamespaceError, match="overlap"):
            validate_state_namespaces(prefixes)

    @pytest.mark.parametrize("prefix", ["history", "snapshots/dev"])
    def test_reserved(self, prefix):
        with pytest.raises(StateNamespaceError, match="reserved"):
            validate_state_namespaces({"dev": prefix})

    def test_empty_prefix(self):
        with pytest.raises(StateNamespaceError, match="empty"):
            validate_state_namespaces({"dev": "/"})
