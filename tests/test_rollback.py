"""
Tests for RollbackManager: target selection, planning and re-apply.
"""

import pytest

from infra_deploy.config.models import EnvironmentConfig
from infra_deploy.history.models import DeploymentStatus, RecordedOperation
from infra_deploy.orchestrator.executor import DeploymentExecutor, ExecutionOptions
from infra_deploy.orchestrator.rollback import RollbackManager
from infra_deploy.state.models import Module, Operation
from infra_deploy.utils.errors import RollbackTargetError, SnapshotMissingError

from tests.conftest import make_modules


@pytest.fixture
def rollback(executor):
    return RollbackManager(executor)


def _deploy(executor, version, **kwargs):
    return executor.run("dev", Operation.APPLY, ExecutionOptions(version=version, **kwargs))


class TestFindTarget:
    """Choosing the record to restore."""

    def test_latest_successful(self, executor, engine, rollback):
        _deploy(executor, "v1")
        engine.failures.add("db")
        _deploy(executor, "v2")

        target = rollback.find_target("dev")
        assert target.record_id == "dev-00000001"
        assert target.version == "v1"

    def test_by_version_or_record_id(self, executor, rollback):
        _deploy(executor, "v1")
        _deploy(executor, "v2")
        assert rollback.find_target("dev", "v1").record_id == "dev-00000001"
        assert rollback.find_target("dev", "dev-00000002").version == "v2"

    def test_no_history(self, rollback):
        with pytest.raises(RollbackTargetError, match="No successful deployment"):
            rollback.find_target("dev")

    def test_unknown_target(self, executor, rollback):
        _deploy(executor, "v1")
        with pytest.raises(RollbackTargetError, match="No deployment record"):
            rollback.find_target("dev", "v9")

    def test_failed_target_rejected(self, executor, engine, rollback):
        engine.failures.add("db")
        _deploy(executor, "v1")
        with pytest.raises(RollbackTargetError, match="did not fully succeed"):
            rollback.find_target("dev", "v1")

    def test_destroy_target_rejected(self, executor, rollback):
        _deploy(executor, "v1")
        executor.run("dev", Operation.DESTROY, ExecutionOptions(version="gone"))
        with pytest.raises(RollbackTargetError, match="destroy"):
            rollback.find_target("dev", "gone")


class TestRollback:
    """Re-applying a recorded snapshot."""

    def test_rollback_reapplies_target(self, executor, engine, rollback):
        _deploy(executor, "v1")
        engine.failures.add("db")
        _deploy(executor, "v2")
        engine.failures.clear()
        engine.calls.clear()

        result = rollback.rollback("dev")

        assert result.is_success()
        assert result.restored_modules == ["vpc", "compute", "db"]
        assert engine.paths(Operation.APPLY)[0] == "vpc"

        record = result.record
        assert record.record_id == "dev-00000003"
        assert record.operation == RecordedOperation.ROLLBACK
        assert record.rollback_of == "dev-00000001"
        assert record.version == "v1"
        assert record.status == DeploymentStatus.SUCCESS

    def test_history_is_append_only(self, executor, engine, rollback):
        _deploy(executor, "v1")
        engine.failures.add("db")
        _deploy(executor, "v2")
        engine.failures.clear()

        rollback.rollback("dev")

        records = executor.history.list("dev")
        assert [r.record_id for r in records] == ["dev-00000003", "dev-00000002", "dev-00000001"]
        assert records[1].status == DeploymentStatus.FAILED

    def test_rollback_becomes_latest_successful(self, executor, engine, rollback):
        _deploy(executor, "v1")
        rollback.rollback("dev")
        assert rollback.find_target("dev").operation == RecordedOperation.ROLLBACK

    def test_orphaned_modules_left_untouched(self, executor, engine, store, locking, clock):
        _deploy(executor, "v1")

        modules = make_modules("dev") + [Module(environment="dev", path="cache")]
        newer = DeploymentExecutor(
            engine=engine,
            store=store,
            environments={"dev": EnvironmentConfig(name="dev", modules=modules)},
            locking=locking,
            holder="tester",
            clock=clock,
        )
        assert newer.run("dev", Operation.APPLY).is_success()
        engine.calls.clear()

        result = RollbackManager(newer).rollback("dev", "v1")

        assert result.orphaned == ["cache"]
        assert "cache" not in engine.paths()
        assert newer.state_manager("dev").load_module_state("cache").is_applied

    def test_missing_snapshot(self, executor, store, rollback):
        report = _deploy(executor, "v1")
        ref = report.record.snapshot_ref
        store.delete(ref, expected_version=store.get(ref).version)

        with pytest.raises(SnapshotMissingError):
            rollback.create_rollback_plan("dev")

    def test_dry_run(self, executor, engine, rollback):
        _deploy(executor, "v1")
        engine.calls.clear()

        result = rollback.rollback("dev", options=ExecutionOptions(dry_run=True))

        assert result.is_success()
        assert result.record is None
        assert engine.calls == []
        assert len(executor.history.list("dev")) == 1

    def test_plan_counts(self, executor, rollback):
        _deploy(executor, "v1")
        plan = rollback.create_rollback_plan("dev")
        assert plan.get_total_operations() == 3
        assert plan.orphaned == []
        assert plan.target.record_id == "dev-00000001"
