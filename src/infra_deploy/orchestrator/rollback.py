"""Rollback of an environment to its last successful deployment."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from infra_deploy.history.manager import DeploymentHistoryManager
from infra_deploy.history.models import DeploymentRecord, RecordedOperation
from infra_deploy.orchestrator.dependency_graph import DependencyGraph
from infra_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentReport,
    ExecutionOptions,
    ProgressCallback,
)
from infra_deploy.state.models import EnvironmentSnapshot, Operation
from infra_deploy.utils.errors import ErrorContext, RollbackTargetError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RollbackPlan:
    """What a rollback will restore."""

    environment: str
    target: DeploymentRecord
    snapshot: EnvironmentSnapshot
    modules_to_restore: List[str]  # Applied in the target, re-applied in order
    orphaned: List[str] = field(default_factory=list)  # Applied now, absent from the target

    def get_total_operations(self) -> int:
        """Get total number of rollback operations."""
        return len(self.modules_to_restore)


@dataclass
class RollbackResult:
    """Result of rollback execution."""

    plan: RollbackPlan
    report: DeploymentReport

    @property
    def record(self) -> Optional[DeploymentRecord]:
        return self.report.record

    @property
    def restored_modules(self) -> List[str]:
        return self.report.succeeded

    @property
    def orphaned(self) -> List[str]:
        return self.plan.orphaned

    @property
    def duration(self) -> float:
        return self.report.duration

    @property
    def end_time(self) -> Optional[datetime]:
        return self.report.end_time

    def is_success(self) -> bool:
        """Check if rollback was successful."""
        return self.report.is_success()

    def is_failed(self) -> bool:
        """Check if rollback failed."""
        return not self.report.is_success()


class RollbackManager:
    """Restores an environment from a recorded snapshot.

    A rollback is a new apply of the target's module definitions; it appends
    a ``rollback`` record and never rewrites history.
    """

    def __init__(self, executor: DeploymentExecutor, history: Optional[DeploymentHistoryManager] = None):
        """
        Initialize RollbackManager.

        Args:
            executor: Executor used to re-apply modules
            history: History manager (defaults to the executor's)
        """
        self.executor = executor
        self.history = history or executor.history

    def find_target(self, environment: str, target: Optional[str] = None) -> DeploymentRecord:
        """
        Pick the record to roll back to.

        Args:
            environment: Environment name
            target: Record ID or version; latest fully-successful record if omitted

        Returns:
            Target record

        Raises:
            RollbackTargetError: If no usable record exists
        """
        context = ErrorContext(environment=environment, operation="rollback")
        if target is None:
            record = self.history.latest_successful(environment)
            if record is None:
                raise RollbackTargetError(
                    f"No successful deployment of '{environment}' to roll back to",
                    context=context
                )
            return record

        record = self.history.find(environment, target)
        if record is None:
            raise RollbackTargetError(f"No deployment record matches '{target}'", context=context)
        if record.operation == RecordedOperation.DESTROY:
            raise RollbackTargetError(f"Record {record.record_id} is a destroy and cannot be restored", context=context)
        if not record.is_successful:
            raise RollbackTargetError(
                f"Record {record.record_id} did not fully succeed ({record.status.value})",
                context=context,
                suggestions=['Pick a record whose status is success (see `infra-deploy history`)']
            )
        return record

    def create_rollback_plan(self, environment: str, target: Optional[str] = None) -> RollbackPlan:
        """
        Build a rollback plan.

        Raises:
            RollbackTargetError: If no usable record exists
            SnapshotMissingError: If the target's snapshot is gone
        """
        record = self.find_target(environment, target)
        snapshot = self.history.load_snapshot(record)

        applied = set(snapshot.applied_paths())
        restore = [module.path for module in snapshot.modules if module.path in applied]
        if not restore:
            raise RollbackTargetError(
                f"Record {record.record_id} has no applied modules to restore",
                context=ErrorContext(environment=environment, operation="rollback")
            )

        state_manager = self.executor.state_manager(environment)
        configured = [m.path for m in self.executor.environment(environment).modules]
        candidates = list(dict.fromkeys(configured + state_manager.recorded_paths()))
        orphaned = [
            path for path, state in state_manager.load_states(candidates).items()
            if state.is_applied and path not in restore
        ]

        logger.info(
            f"Rollback to {record.record_id}: {len(restore)} modules to restore, {len(orphaned)} orphaned",
            extra={'environment': environment, 'operation': 'rollback'}
        )
        return RollbackPlan(
            environment=environment,
            target=record,
            snapshot=snapshot,
            modules_to_restore=restore,
            orphaned=orphaned
        )

    def execute_rollback(
        self,
        plan: RollbackPlan,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        """
        Re-apply the target's modules.

        Args:
            plan: Rollback plan
            options: Run options (targets are replaced by the plan's modules)
            progress_callback: Optional callback for status changes

        Returns:
            RollbackResult with the new rollback record
        """
        options = replace(
            options or ExecutionOptions(),
            targets=list(plan.modules_to_restore),
            version=(options.version if options and options.version else plan.target.version)
        )
        graph = DependencyGraph.build(plan.snapshot.modules)

        for path in plan.orphaned:
            logger.warning(
                f"Module is applied but absent from {plan.target.record_id}; leaving it untouched",
                extra={'environment': plan.environment, 'module_path': path, 'operation': 'rollback'}
            )

        report = self.executor.execute_graph(
            plan.environment,
            graph,
            Operation.APPLY,
            options,
            progress_callback,
            recorded_operation=RecordedOperation.ROLLBACK,
            rollback_of=plan.target.record_id
        )
        return RollbackResult(plan=plan, report=report)

    def rollback(
        self,
        environment: str,
        target: Optional[str] = None,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        """Roll an environment back to a recorded deployment."""
        plan = self.create_rollback_plan(environment, target)
        return self.execute_rollback(plan, options, progress_callback)
