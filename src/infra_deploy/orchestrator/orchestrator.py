"""Main orchestrator that coordinates runs across environments."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional

from infra_deploy.config.parser import Config
from infra_deploy.engine.base import ProvisioningEngine
from infra_deploy.history.models import DeploymentRecord
from infra_deploy.history.retention import RetentionManager, RetentionPolicy
from infra_deploy.orchestrator.change_detector import ChangeDetector, ChangeSet, ModuleOwnershipMap
from infra_deploy.orchestrator.dependency_graph import DependencyGraph
from infra_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentReport,
    ExecutionOptions,
    ProgressCallback,
)
from infra_deploy.orchestrator.rollback import RollbackManager, RollbackResult
from infra_deploy.state.lock import LockRecord
from infra_deploy.state.models import ModuleId, Operation
from infra_deploy.state.store import StateStore
from infra_deploy.utils.errors import ConfigurationError, DeploymentError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)

ALL_ENVIRONMENTS = "all"


@dataclass
class OrchestrationResult:
    """Reports of every environment in one invocation."""

    operation: Operation
    reports: Dict[str, DeploymentReport] = field(default_factory=dict)
    errors: Dict[str, DeploymentError] = field(default_factory=dict)  # Runs that never started

    def is_success(self) -> bool:
        return not self.errors and all(report.is_success() for report in self.reports.values())

    @property
    def environments(self) -> List[str]:
        return list(dict.fromkeys(list(self.reports) + list(self.errors)))


class DeploymentOrchestrator:
    """Coordinates execution, change detection and rollback."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        engine: ProvisioningEngine,
        holder: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            config: Loaded configuration
            store: State store shared by state, locks and history
            engine: Provisioning engine
            holder: Lock holder identity
            clock: Time source returning epoch seconds
            cancel_event: Event that cancels every environment when set
        """
        self.config = config
        self.store = store
        self.engine = engine
        self.environment_concurrency = config.execution.environment_concurrency

        self.executor = DeploymentExecutor(
            engine=engine,
            store=store,
            environments=config.environments,
            locking=config.locking,
            concurrency=config.execution.concurrency,
            fail_fast=config.execution.fail_fast,
            holder=holder,
            clock=clock,
            cancel_event=cancel_event
        )
        self.history = self.executor.history
        self.rollback_manager = RollbackManager(self.executor)
        self.retention_manager = RetentionManager(self.history)

    def cancel(self) -> None:
        """Cancel in-flight runs in every environment."""
        self.executor.cancel()

    def select_environments(self, selector: str) -> List[str]:
        """Resolve an environment name or ``all`` into environment names."""
        if selector == ALL_ENVIRONMENTS:
            return list(self.config.environments)
        self.executor.environment(selector)
        return [selector]

    def graph(self, environment: str) -> DependencyGraph:
        return self.executor.graph(environment)

    def deploy(
        self,
        environment: str,
        operation: Operation,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> OrchestrationResult:
        """Run an operation on one environment or on ``all``.

        Args:
            environment: Environment name or "all"
            operation: Operation to perform
            options: Run options applied to every environment
            progress_callback: Optional callback for module status changes

        Returns:
            OrchestrationResult with one report per environment
        """
        options = options or ExecutionOptions()
        runs = {env: options for env in self.select_environments(environment)}
        return self._run_environments(runs, operation, progress_callback)

    def _run_environments(
        self,
        runs: Dict[str, ExecutionOptions],
        operation: Operation,
        progress_callback: Optional[ProgressCallback]
    ) -> OrchestrationResult:
        result = OrchestrationResult(operation=operation)
        if not runs:
            return result

        # Environments share nothing, so they run side by side
        with ThreadPoolExecutor(
            max_workers=min(self.environment_concurrency, len(runs)),
            thread_name_prefix="environment"
        ) as pool:
            futures = {
                env: pool.submit(self.executor.run, env, operation, env_options, progress_callback)
                for env, env_options in runs.items()
            }
            for env, future in futures.items():
                try:
                    result.reports[env] = future.result()
                except DeploymentError as e:
                    logger.error(f"{operation.value} did not start: {e.message}", extra={'environment': env})
                    result.errors[env] = e

        return result

    def ownership(self) -> ModuleOwnershipMap:
        return ModuleOwnershipMap.from_environments(
            {name: env.modules for name, env in self.config.environments.items()},
            live_root=self.config.project.live_root,
            library_root=self.config.project.library_root
        )

    def affected(self, changed_paths: Iterable[str], include_dependents: bool = True) -> ChangeSet:
        """Modules affected by a change set.

        Args:
            changed_paths: Repository-relative changed paths
            include_dependents: Also include transitive consumers of affected modules

        Returns:
            ChangeSet
        """
        change_set = ChangeDetector(self.ownership()).detect(changed_paths)
        if include_dependents:
            expanded = set(change_set.affected)
            for module_id in change_set.affected:
                expanded.update(self.graph(module_id.environment).get_all_dependents(module_id))
            change_set.affected = expanded
        return change_set

    def deploy_changes(
        self,
        changed_paths: Iterable[str],
        operation: Operation,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> OrchestrationResult:
        """Run an operation on exactly the modules a change set affects."""
        options = options or ExecutionOptions()
        change_set = self.affected(changed_paths)
        runs = {
            env: replace(options, targets=paths)
            for env, paths in change_set.by_environment().items()
        }
        if not runs:
            logger.info("No modules affected by the change set")
        return self._run_environments(runs, operation, progress_callback)

    def rollback(
        self,
        environment: str,
        target: Optional[str] = None,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        if environment == ALL_ENVIRONMENTS:
            raise ConfigurationError("Rollback targets a single environment")
        self.executor.environment(environment)
        return self.rollback_manager.rollback(environment, target, options, progress_callback)

    def list_history(self, environment: str, limit: Optional[int] = None) -> List[DeploymentRecord]:
        self.executor.environment(environment)
        return self.history.list(environment, limit=limit)

    def prune_history(self, environment: str, policy: RetentionPolicy, dry_run: bool = False) -> Dict[str, List[str]]:
        self.executor.environment(environment)
        return self.retention_manager.apply_retention_policy(policy, environment, dry_run=dry_run)

    def get_lock(self, environment: str, module_path: str) -> Optional[LockRecord]:
        key = self.executor.state_manager(environment).state_key(module_path)
        return self.executor.lock_manager.get_lock(key)

    def unlock(self, environment: str, module_path: str) -> Optional[LockRecord]:
        """Remove the lock on a module's state, returning what was removed."""
        graph = self.graph(environment)
        if ModuleId(environment, module_path.strip("/")) not in graph:
            raise ConfigurationError(f"Module '{module_path}' not found in '{environment}'")
        key = self.executor.state_manager(environment).state_key(module_path)
        return self.executor.lock_manager.force_unlock(key)
