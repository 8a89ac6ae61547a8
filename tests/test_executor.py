"""
Tests for DeploymentExecutor: ordering, mocks, locking, failure isolation.
"""

import threading
import time

import pytest

from infra_deploy.config.models import EnvironmentConfig
from infra_deploy.history.models import DeploymentStatus, RecordedOperation
from infra_deploy.orchestrator.executor import DeploymentExecutor, ExecutionOptions, ModuleStatus
from infra_deploy.state.models import Dependency, LifecycleState, Module, Operation
from infra_deploy.state.store import InMemoryStateStore
from infra_deploy.utils.errors import (
    ConfigurationError,
    DeploymentError,
    LockLostError,
    LockTimeoutError,
    OperationCancelledError,
    ProvisioningError,
    StateError,
    UnresolvedDependencyError,
)


def _state(executor, path, environment="dev"):
    return executor.state_manager(environment).load_module_state(path)


def _apply_all(executor, environment="dev"):
    report = executor.run(environment, Operation.APPLY)
    assert report.is_success()
    return report


class FailingReleaseStore(InMemoryStateStore):
    """Store whose first delete of one lock record fails."""

    def __init__(self, lock_key):
        super().__init__()
        self.lock_key = lock_key
        self.failed = False

    def delete(self, key, expected_version):
        if key == self.lock_key and not self.failed:
            self.failed = True
            raise StateError("backend unavailable")
        super().delete(key, expected_version)


class BrokenLockStore(InMemoryStateStore):
    """Store that cannot write lock records."""

    def put(self, key, value, expected_version=None):
        if key.endswith(".lock"):
            raise RuntimeError("disk full")
        return super().put(key, value, expected_version)


def _executor_on(store, engine, environments, locking, clock):
    return DeploymentExecutor(
        engine=engine,
        store=store,
        environments=environments,
        locking=locking,
        holder="tester",
        clock=clock,
    )


# ═══════════════════════════════════════════════════════════════════
#  Mocked outputs and preflight
# ═══════════════════════════════════════════════════════════════════


class TestMockedPlanning:
    """Plans use mocks; destructive operations never do."""

    def test_plan_uses_mock_for_unapplied_producer(self, executor, engine):
        report = executor.run("dev", Operation.PLAN, ExecutionOptions(targets=["compute"]))

        assert report.succeeded == ["compute"]
        assert report.outcomes["compute"].mocked_inputs == ["subnet_id"]
        assert engine.inputs_of("compute", Operation.PLAN) == {"subnet_id": "subnet-000000"}

    def test_apply_before_producer_fails_fast(self, executor, engine):
        with pytest.raises(UnresolvedDependencyError) as exc:
            executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["compute"]))

        assert exc.value.producer == "dev/vpc"
        assert engine.calls == []
        assert executor.history.list("dev") == []

    def test_apply_without_fail_fast_records_failure(self, executor, engine):
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["compute"], fail_fast=False))

        outcome = report.outcomes["compute"]
        assert outcome.status == ModuleStatus.FAILED
        assert isinstance(outcome.error, UnresolvedDependencyError)
        assert engine.calls == []
        assert report.record.status == DeploymentStatus.FAILED

    def test_plan_without_mock_fails_only_that_module(self, executor):
        report = executor.run("dev", Operation.PLAN, ExecutionOptions(fail_fast=False))

        assert report.succeeded == ["vpc", "compute"]
        assert report.failed == ["db"]
        assert report.record is None

    def test_plan_with_mocks_does_not_touch_consumer_state(self, executor):
        executor.run("dev", Operation.PLAN, ExecutionOptions(targets=["vpc", "compute"]))

        assert _state(executor, "vpc").lifecycle == LifecycleState.PLANNED
        assert _state(executor, "compute").lifecycle == LifecycleState.UNPLANNED

    def test_plan_after_apply_uses_real_outputs(self, executor, engine):
        _apply_all(executor)
        report = executor.run("dev", Operation.PLAN)

        assert report.is_success()
        assert report.outcomes["compute"].mocked_inputs == []
        assert _state(executor, "vpc").lifecycle == LifecycleState.APPLIED

    def test_validate_writes_no_state(self, executor, store):
        executor.run("dev", Operation.VALIDATE, ExecutionOptions(targets=["vpc"]))
        assert store.list_keys() == []


# ═══════════════════════════════════════════════════════════════════
#  Apply and destroy
# ═══════════════════════════════════════════════════════════════════


class TestApply:
    """Successful and failed applies."""

    def test_full_apply_in_order(self, executor, engine):
        report = _apply_all(executor)

        assert list(report.outcomes) == ["vpc", "compute", "db"]
        assert engine.paths(Operation.APPLY)[0] == "vpc"
        assert engine.inputs_of("db", Operation.APPLY) == {"subnet_id": "subnet-123"}

        vpc = _state(executor, "vpc")
        assert vpc.lifecycle == LifecycleState.APPLIED
        assert vpc.outputs == {"subnet_id": "subnet-123", "vpc_id": "vpc-1"}
        assert vpc.last_operation == Operation.APPLY

    def test_apply_is_recorded_with_snapshot(self, executor):
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(version="abc123"))

        record = report.record
        assert record.record_id == "dev-00000001"
        assert record.operation == RecordedOperation.APPLY
        assert record.status == DeploymentStatus.SUCCESS
        assert record.version == "abc123"
        assert record.deployed_by == "tester"
        assert _state(executor, "vpc").version == "abc123"
        assert _state(executor, "db").version == "abc123"
        assert record.module_paths("succeeded") == ["vpc", "compute", "db"]

        snapshot = executor.history.load_snapshot(record)
        assert snapshot.applied_paths() == ["vpc", "compute", "db"]

    def test_failed_apply_keeps_prior_outputs(self, executor, engine):
        _apply_all(executor)
        engine.failures.add(("vpc", Operation.APPLY))

        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"]))

        outcome = report.outcomes["vpc"]
        assert isinstance(outcome.error, ProvisioningError)
        assert outcome.error.diagnostics == "apply of vpc failed"
        state = _state(executor, "vpc")
        assert state.lifecycle == LifecycleState.FAILED
        assert state.outputs["subnet_id"] == "subnet-123"

    def test_failed_producer_falls_back_to_mock_for_plan(self, executor, engine):
        _apply_all(executor)
        engine.failures.add(("vpc", Operation.APPLY))
        executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"]))

        report = executor.run("dev", Operation.PLAN, ExecutionOptions(targets=["compute"]))
        assert report.outcomes["compute"].mocked_inputs == ["subnet_id"]

    def test_engine_exception_becomes_failure(self, executor, engine):
        def explode(module, operation, inputs):
            raise RuntimeError("boom")

        engine.hooks["vpc"] = explode
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"]))

        error = report.outcomes["vpc"].error
        assert isinstance(error, ProvisioningError)
        assert "boom" in error.message

    def test_targets_are_normalized(self, executor, engine):
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["./vpc", "compute/"]))

        assert report.succeeded == ["vpc", "compute"]
        assert engine.paths() == ["vpc", "compute"]

    def test_unknown_target(self, executor):
        with pytest.raises(ConfigurationError, match="Unknown target"):
            executor.run("dev", Operation.PLAN, ExecutionOptions(targets=["nope"]))

    def test_unknown_environment(self, executor):
        with pytest.raises(ConfigurationError, match="not found"):
            executor.run("qa", Operation.PLAN)

    def test_environments_are_independent(self, executor):
        _apply_all(executor, "dev")
        assert _state(executor, "vpc", "staging").lifecycle == LifecycleState.UNPLANNED
        assert executor.history.list("staging") == []


class TestFailureIsolation:
    """A failure skips its dependents; independent branches continue."""

    @pytest.fixture
    def branching(self, engine, store, locking, clock):
        modules = [
            Module(environment="dev", path="vpc"),
            Module(environment="dev", path="compute",
                   dependencies=[Dependency(module="vpc", outputs=["subnet_id"])]),
            Module(environment="dev", path="app", dependencies=[Dependency(module="compute")]),
            Module(environment="dev", path="dns"),
        ]
        return DeploymentExecutor(
            engine=engine,
            store=store,
            environments={"dev": EnvironmentConfig(name="dev", modules=modules)},
            locking=locking,
            holder="tester",
            clock=clock,
        )

    def test_cascading_skip(self, branching, engine):
        engine.failures.add("vpc")
        report = branching.run("dev", Operation.APPLY)

        assert report.failed == ["vpc"]
        assert report.skipped == ["compute", "app"]
        assert report.succeeded == ["dns"]
        assert report.outcomes["compute"].skipped_because.path == "vpc"
        assert report.outcomes["app"].skipped_because.path == "compute"
        assert "compute" not in engine.paths()
        assert report.record.status == DeploymentStatus.FAILED

    def test_progress_callback(self, branching):
        seen = []
        branching.run(
            "dev",
            Operation.APPLY,
            ExecutionOptions(targets=["dns"]),
            progress_callback=lambda module_id, status, message: seen.append(status),
        )
        assert seen == [
            ModuleStatus.LOCKING,
            ModuleStatus.RESOLVING,
            ModuleStatus.EXECUTING,
            ModuleStatus.SUCCEEDED,
        ]


class TestScheduling:
    """Independent modules run in parallel up to the concurrency limit."""

    @pytest.fixture
    def flat(self, engine, store, locking, clock):
        modules = [Module(environment="dev", path=f"svc{n}") for n in range(5)]
        return _executor_on(
            store, engine, {"dev": EnvironmentConfig(name="dev", modules=modules)}, locking, clock
        )

    def _track_in_flight(self, engine, paths):
        counter = {"running": 0, "peak": 0}
        guard = threading.Lock()

        def hook(module, operation, inputs):
            with guard:
                counter["running"] += 1
                counter["peak"] = max(counter["peak"], counter["running"])
            time.sleep(0.05)
            with guard:
                counter["running"] -= 1

        for path in paths:
            engine.hooks[path] = hook
        return counter

    def test_siblings_overlap(self, executor, engine):
        # Each sibling waits for the other; sequential execution breaks the barrier
        barrier = threading.Barrier(2, timeout=5)
        engine.hooks["compute"] = lambda module, operation, inputs: barrier.wait()
        engine.hooks["db"] = lambda module, operation, inputs: barrier.wait()

        report = executor.run("dev", Operation.APPLY, ExecutionOptions(concurrency=2))

        assert report.is_success()
        assert not barrier.broken

    @pytest.mark.parametrize("concurrency", [1, 2, 3])
    def test_in_flight_never_exceeds_limit(self, flat, engine, concurrency):
        counter = self._track_in_flight(engine, [f"svc{n}" for n in range(5)])

        report = flat.run("dev", Operation.APPLY, ExecutionOptions(concurrency=concurrency))

        assert report.is_success()
        assert len(engine.calls) == 5
        assert 1 <= counter["peak"] <= concurrency

    def test_dependents_wait_for_producer(self, executor, engine):
        counter = self._track_in_flight(engine, ["vpc", "compute", "db"])
        finished = []
        engine.hooks["vpc"] = lambda module, operation, inputs: finished.append(len(engine.calls))

        report = executor.run("dev", Operation.APPLY, ExecutionOptions(concurrency=3))

        assert report.is_success()
        assert finished == [1]
        assert counter["peak"] <= 2


class TestDestroy:
    """Destroy runs consumers before producers."""

    def test_destroy_order_and_state(self, executor, engine):
        _apply_all(executor)
        report = executor.run("dev", Operation.DESTROY, ExecutionOptions(concurrency=1))

        assert report.is_success()
        assert engine.paths(Operation.DESTROY) == ["db", "compute", "vpc"]
        assert engine.inputs_of("compute", Operation.DESTROY) == {"subnet_id": "subnet-123"}
        for path in ("vpc", "compute", "db"):
            state = _state(executor, path)
            assert state.lifecycle == LifecycleState.DESTROYED
            assert state.outputs == {}
        assert report.record.operation == RecordedOperation.DESTROY

    def test_failed_consumer_blocks_producer(self, executor, engine):
        _apply_all(executor)
        engine.failures.add(("compute", Operation.DESTROY))

        report = executor.run("dev", Operation.DESTROY)

        assert report.failed == ["compute"]
        assert report.skipped == ["vpc"]
        assert report.succeeded == ["db"]
        assert _state(executor, "vpc").lifecycle == LifecycleState.APPLIED

    def test_destroy_never_uses_mocks(self, executor):
        with pytest.raises(UnresolvedDependencyError):
            executor.run("dev", Operation.DESTROY, ExecutionOptions(targets=["compute"]))


# ═══════════════════════════════════════════════════════════════════
#  Locking
# ═══════════════════════════════════════════════════════════════════


class TestLocking:
    """Lock contention, forced takeover and lock loss."""

    KEY = "state/dev/vpc/state.json"

    def test_held_lock_times_out(self, executor, engine):
        executor.lock_manager.acquire(self.KEY, "someone-else")
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"]))

        error = report.outcomes["vpc"].error
        assert isinstance(error, LockTimeoutError)
        assert error.attempts == 2
        assert engine.calls == []

    def test_force_takes_over(self, executor):
        executor.lock_manager.acquire(self.KEY, "someone-else")
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"], force=True))

        assert report.is_success()
        assert executor.lock_manager.get_lock(self.KEY) is None

    def test_locks_released_after_run(self, executor, store):
        _apply_all(executor)
        assert [k for k in store.list_keys() if k.endswith(".lock")] == []

    def test_lost_lock_fails_module(self, executor, engine):
        def steal(module, operation, inputs):
            executor.lock_manager.acquire(self.KEY, "intruder", force=True)
            time.sleep(0.5)

        engine.hooks["vpc"] = steal
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"], lock_ttl=0.3))

        outcome = report.outcomes["vpc"]
        assert isinstance(outcome.error, LockLostError)
        assert outcome.outputs == {"subnet_id": "subnet-123", "vpc_id": "vpc-1"}
        assert "outputs after lock loss" in outcome.diagnostics
        assert _state(executor, "vpc").lifecycle == LifecycleState.UNPLANNED
        assert executor.lock_manager.get_lock(self.KEY).holder == "intruder"

    def test_failed_release_does_not_abort_run(self, engine, environments, locking, clock):
        store = FailingReleaseStore("state/dev/compute/state.json.lock")
        executor = _executor_on(store, engine, environments, locking, clock)

        report = executor.run("dev", Operation.APPLY, ExecutionOptions(concurrency=1))

        assert store.failed
        assert report.is_success()
        assert engine.paths() == ["vpc", "compute", "db"]
        assert "lock release failed: backend unavailable" in report.outcomes["compute"].diagnostics
        assert _state(executor, "compute").is_applied
        assert executor.lock_manager.get_lock("state/dev/compute/state.json").holder == "tester"
        assert report.record is not None
        assert [r.record_id for r in executor.history.list("dev")] == ["dev-00000001"]

    def test_unexpected_acquire_error_fails_module(self, engine, environments, locking, clock):
        executor = _executor_on(BrokenLockStore(), engine, environments, locking, clock)

        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc"]))

        error = report.outcomes["vpc"].error
        assert report.failed == ["vpc"]
        assert isinstance(error, DeploymentError)
        assert isinstance(error.cause, RuntimeError)
        assert engine.calls == []
        assert report.record.status == DeploymentStatus.FAILED


# ═══════════════════════════════════════════════════════════════════
#  Cancellation and dry run
# ═══════════════════════════════════════════════════════════════════


class TestCancellation:
    """Cancel lets executing modules finish and skips the rest."""

    def test_cancel_mid_run(self, executor, engine):
        engine.hooks["vpc"] = lambda module, operation, inputs: executor.cancel()

        report = executor.run("dev", Operation.APPLY)

        assert report.succeeded == ["vpc"]
        assert report.skipped == ["compute", "db"]
        assert isinstance(report.outcomes["compute"].error, OperationCancelledError)
        assert report.cancelled
        assert report.deployment_status() == DeploymentStatus.CANCELLED
        assert report.record.status == DeploymentStatus.CANCELLED
        assert _state(executor, "vpc").is_applied


class TestDryRun:
    """Dry runs resolve inputs without invoking the engine."""

    def test_dry_run_apply(self, executor, engine, store):
        report = executor.run("dev", Operation.APPLY, ExecutionOptions(targets=["vpc", "compute"], dry_run=True))

        assert report.dry_run
        assert report.succeeded == ["vpc", "compute"]
        assert report.outcomes["compute"].mocked_inputs == ["subnet_id"]
        assert "dry run" in report.outcomes["vpc"].diagnostics
        assert engine.calls == []
        assert report.record is None
        assert store.list_keys() == []
