"""Deployment executor with parallel execution and progress tracking."""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from infra_deploy.config.models import EnvironmentConfig, LockingConfig
from infra_deploy.engine.base import ProvisioningEngine
from infra_deploy.history.manager import DeploymentHistoryManager
from infra_deploy.history.models import (
    DeploymentRecord,
    DeploymentStatus,
    ModuleOutcomeRecord,
    RecordedOperation,
)
from infra_deploy.orchestrator.dependency_graph import DependencyGraph
from infra_deploy.orchestrator.outputs import MockOutputResolver, OutputSet
from infra_deploy.state.lock import LockHandle, LockManager, LockRenewer, default_holder
from infra_deploy.state.manager import StateManager
from infra_deploy.state.models import LifecycleState, Module, ModuleId, ModuleState, Operation, normalize_path
from infra_deploy.state.store import StateStore
from infra_deploy.utils.errors import (
    ConfigurationError,
    ContentionError,
    DeploymentError,
    ErrorContext,
    LockLostError,
    LockTimeoutError,
    OperationCancelledError,
    ProvisioningError,
    UnresolvedDependencyError,
    error_handler,
)
from infra_deploy.utils.logging import get_logger
from infra_deploy.utils.retry import RetryStrategy

logger = get_logger(__name__)


class ModuleStatus(Enum):
    """Execution status of one module within a run."""
    PENDING = "pending"
    LOCKING = "locking"
    RESOLVING = "resolving"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (ModuleStatus.SUCCEEDED, ModuleStatus.FAILED, ModuleStatus.SKIPPED)


@dataclass
class ModuleOutcome:
    """Result of executing a single module."""

    module_id: ModuleId
    status: ModuleStatus = ModuleStatus.PENDING
    error: Optional[DeploymentError] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    mocked_inputs: List[str] = field(default_factory=list)
    diagnostics: str = ""
    skipped_because: Optional[ModuleId] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if execution was successful."""
        return self.status == ModuleStatus.SUCCEEDED

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self.status == ModuleStatus.FAILED

    def is_skipped(self) -> bool:
        return self.status == ModuleStatus.SKIPPED

    def message(self) -> Optional[str]:
        if self.error is not None:
            return self.error.message
        if self.skipped_because is not None:
            return f"skipped because {self.skipped_because} did not succeed"
        return None

    def to_record(self) -> ModuleOutcomeRecord:
        return ModuleOutcomeRecord(
            path=self.module_id.path,
            status=self.status.value,
            error=self.message(),
            error_type=type(self.error).__name__ if self.error else None,
            duration=self.duration,
        )


@dataclass
class DeploymentReport:
    """Complete result of one run against one environment."""

    environment: str
    operation: Operation
    outcomes: Dict[str, ModuleOutcome] = field(default_factory=dict)  # By path, execution order
    dry_run: bool = False
    cancelled: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    record: Optional[DeploymentRecord] = None

    def _paths(self, status: ModuleStatus) -> List[str]:
        return [path for path, outcome in self.outcomes.items() if outcome.status == status]

    @property
    def succeeded(self) -> List[str]:
        return self._paths(ModuleStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self._paths(ModuleStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._paths(ModuleStatus.SKIPPED)

    def is_success(self) -> bool:
        """Every module in the run succeeded."""
        return not self.cancelled and all(o.is_success() for o in self.outcomes.values())

    def deployment_status(self) -> DeploymentStatus:
        if self.cancelled:
            return DeploymentStatus.CANCELLED
        return DeploymentStatus.SUCCESS if self.is_success() else DeploymentStatus.FAILED


@dataclass
class ExecutionOptions:
    """Options for one run."""
    dry_run: bool = False
    force: bool = False
    concurrency: Optional[int] = None
    targets: Optional[List[str]] = None
    version: Optional[str] = None
    lock_ttl: Optional[float] = None
    fail_fast: Optional[bool] = None


# Type alias for progress callback
ProgressCallback = Callable[[ModuleId, ModuleStatus, Optional[str]], None]


@dataclass
class _RunContext:
    """Per-run bookkeeping shared by the scheduler and its workers."""

    environment: str
    graph: DependencyGraph
    operation: Operation
    resolve_operation: Operation
    options: ExecutionOptions
    state_manager: StateManager
    outcomes: Dict[ModuleId, ModuleOutcome]
    run_ids: Set[ModuleId]
    progress_callback: Optional[ProgressCallback]


class DeploymentExecutor:
    """Executes operations on the modules of an environment in dependency order."""

    def __init__(
        self,
        engine: ProvisioningEngine,
        store: StateStore,
        environments: Mapping[str, EnvironmentConfig],
        locking: Optional[LockingConfig] = None,
        lock_manager: Optional[LockManager] = None,
        history: Optional[DeploymentHistoryManager] = None,
        resolver: Optional[MockOutputResolver] = None,
        concurrency: int = 4,
        fail_fast: bool = True,
        holder: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize deployment executor.

        Args:
            engine: Provisioning engine that performs module operations
            store: State store for module state, locks and history
            environments: Environment configurations by name
            locking: Lock ttl and acquisition backoff settings
            lock_manager: Lock manager (built on the store if omitted)
            history: History manager (built on the store if omitted)
            resolver: Output resolver
            concurrency: Default parallel modules per environment
            fail_fast: Default for aborting runs with unresolvable inputs
            holder: Lock holder identity for this process
            clock: Time source returning epoch seconds
            cancel_event: Event that cancels every run when set
        """
        self.engine = engine
        self.store = store
        self.environments = dict(environments)
        self.locking = locking or LockingConfig()
        self.clock = clock
        self.lock_manager = lock_manager or LockManager(store, clock=clock, default_ttl=self.locking.ttl)
        self.history = history or DeploymentHistoryManager(store)
        self.resolver = resolver or MockOutputResolver()
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.holder = holder or default_holder()
        self.cancel_event = cancel_event or threading.Event()
        self._graphs: Dict[str, DependencyGraph] = {}
        self._graphs_lock = threading.Lock()

    def cancel(self) -> None:
        """Cancel every run: executing modules finish, the rest are skipped."""
        logger.warning("Cancellation requested")
        self.cancel_event.set()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def environment(self, name: str) -> EnvironmentConfig:
        if name not in self.environments:
            available = ", ".join(sorted(self.environments))
            raise ConfigurationError(
                f"Environment '{name}' not found. Available environments: {available}"
            )
        return self.environments[name]

    def graph(self, environment: str) -> DependencyGraph:
        """Validated dependency graph of an environment (cached)."""
        with self._graphs_lock:
            if environment not in self._graphs:
                self._graphs[environment] = DependencyGraph.build(self.environment(environment).modules)
            return self._graphs[environment]

    def state_manager(self, environment: str) -> StateManager:
        return StateManager(
            self.store,
            environment,
            self.environment(environment).state_prefix,
            self.lock_manager,
            clock=self.clock
        )

    def run(
        self,
        environment: str,
        operation: Operation,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> DeploymentReport:
        """Run an operation on an environment.

        Args:
            environment: Environment name
            operation: Operation to perform
            options: Run options
            progress_callback: Optional callback for status changes

        Returns:
            DeploymentReport with one outcome per module in the run

        Raises:
            ConfigurationError: If the environment or graph is invalid
            UnresolvedDependencyError: If fail-fast preflight finds unresolvable inputs
        """
        return self.execute_graph(
            environment, self.graph(environment), operation, options, progress_callback
        )

    def execute_graph(
        self,
        environment: str,
        graph: DependencyGraph,
        operation: Operation,
        options: Optional[ExecutionOptions] = None,
        progress_callback: Optional[ProgressCallback] = None,
        recorded_operation: Optional[RecordedOperation] = None,
        rollback_of: Optional[str] = None
    ) -> DeploymentReport:
        """Run an operation over an explicit graph of the environment's modules.

        Args:
            environment: Environment name
            graph: Graph of the modules to operate on
            operation: Operation to perform
            options: Run options
            progress_callback: Optional callback for status changes
            recorded_operation: Operation name for the history record
            rollback_of: Record ID a rollback run restores

        Returns:
            DeploymentReport
        """
        options = options or ExecutionOptions()
        fail_fast = self.fail_fast if options.fail_fast is None else options.fail_fast
        run_ids = self._select(graph, options.targets)
        order = graph.destruction_order() if operation == Operation.DESTROY else graph.order()
        ordered_ids = [module.id for module in order if module.id in run_ids]

        ctx = _RunContext(
            environment=environment,
            graph=graph,
            operation=operation,
            # Dry runs never touch infrastructure, so they resolve like a plan
            resolve_operation=Operation.PLAN if options.dry_run and operation.is_destructive else operation,
            options=options,
            state_manager=self.state_manager(environment),
            outcomes={module_id: ModuleOutcome(module_id) for module_id in ordered_ids},
            run_ids=run_ids,
            progress_callback=progress_callback,
        )

        start = self.clock()
        report = DeploymentReport(
            environment=environment,
            operation=operation,
            dry_run=options.dry_run,
            start_time=self._now()
        )
        logger.info(
            f"Starting {operation.value} of {len(ordered_ids)} modules"
            f"{' (dry run)' if options.dry_run else ''}",
            extra={'environment': environment, 'operation': operation.value}
        )

        unresolved = self._preflight(ctx, ordered_ids)
        if unresolved:
            if fail_fast:
                first = next(iter(unresolved.values()))
                logger.error(
                    f"Preflight found {len(unresolved)} module(s) with unresolvable inputs",
                    extra={'environment': environment, 'operation': operation.value}
                )
                raise first
            for module_id, error in unresolved.items():
                self._finish(ctx, module_id, ModuleStatus.FAILED, error=error)

        self._schedule(ctx, ordered_ids, self._blockers(graph, operation, run_ids))

        report.outcomes = {module_id.path: ctx.outcomes[module_id] for module_id in ordered_ids}
        report.cancelled = self.cancel_event.is_set()
        report.end_time = self._now()
        report.duration = self.clock() - start

        if not options.dry_run and (recorded_operation or operation.is_destructive):
            report.record = self._record(
                ctx, report, recorded_operation or RecordedOperation(operation.value), rollback_of
            )

        logger.info(
            f"Finished {operation.value}: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped",
            extra={'environment': environment, 'operation': operation.value, 'duration': report.duration}
        )
        return report

    def _select(self, graph: DependencyGraph, targets: Optional[List[str]]) -> Set[ModuleId]:
        if not targets:
            return {module.id for module in graph.modules}
        environment_of = {module.path: module.id for module in graph.modules}
        missing = [t for t in targets if normalize_path(t) not in environment_of]
        if missing:
            raise ConfigurationError(f"Unknown target modules: {', '.join(missing)}")
        return {environment_of[normalize_path(t)] for t in targets}

    def _blockers(
        self,
        graph: DependencyGraph,
        operation: Operation,
        run_ids: Set[ModuleId]
    ) -> Dict[ModuleId, Set[ModuleId]]:
        """Modules in the run that must succeed before each module may start."""
        if operation == Operation.DESTROY:
            # Destroy walks the reversed graph: consumers go first
            return {m: graph.get_dependents(m) & run_ids for m in run_ids}
        return {m: graph.get_dependencies(m) & run_ids for m in run_ids}

    def _preflight(self, ctx: _RunContext, ordered_ids: List[ModuleId]) -> Dict[ModuleId, UnresolvedDependencyError]:
        """Find modules whose inputs can never resolve in this run."""
        unresolved: Dict[ModuleId, UnresolvedDependencyError] = {}
        states: Dict[ModuleId, ModuleState] = {}

        for module_id in ordered_ids:
            module = ctx.graph.get_module(module_id)
            pending_edges = []
            for edge in ctx.graph.edges_of(module_id):
                # Producers applied earlier in this run resolve later
                if edge.producer in ctx.run_ids and ctx.resolve_operation == Operation.APPLY:
                    continue
                pending_edges.append(edge)
                if edge.producer not in states:
                    states[edge.producer] = ctx.state_manager.load_module_state(edge.producer.path)
            try:
                self.resolver.resolve_module(module, states, ctx.resolve_operation, edges=pending_edges)
            except UnresolvedDependencyError as e:
                unresolved[module_id] = e
        return unresolved

    def _schedule(
        self,
        ctx: _RunContext,
        ordered_ids: List[ModuleId],
        blockers: Dict[ModuleId, Set[ModuleId]]
    ) -> None:
        """Submit ready modules to a bounded pool until every module is terminal."""
        concurrency = ctx.options.concurrency or self.concurrency
        pending = [m for m in ordered_ids if ctx.outcomes[m].status == ModuleStatus.PENDING]
        running: Dict[Future, ModuleId] = {}

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"deploy-{ctx.environment}") as pool:
            while pending or running:
                if self.cancel_event.is_set():
                    for module_id in pending:
                        self._finish(ctx, module_id, ModuleStatus.SKIPPED, error=OperationCancelledError())
                    pending = []

                # One pass in execution order cascades skips transitively
                still_pending = []
                for module_id in pending:
                    blocker = next(
                        (b for b in sorted(blockers[module_id], key=ctx.graph.index_of)
                         if ctx.outcomes[b].status in (ModuleStatus.FAILED, ModuleStatus.SKIPPED)),
                        None
                    )
                    if blocker is not None:
                        outcome = ctx.outcomes[module_id]
                        outcome.skipped_because = blocker
                        self._finish(ctx, module_id, ModuleStatus.SKIPPED)
                    else:
                        still_pending.append(module_id)
                pending = still_pending

                for module_id in list(pending):
                    if len(running) >= concurrency:
                        break
                    if all(ctx.outcomes[b].status == ModuleStatus.SUCCEEDED for b in blockers[module_id]):
                        pending.remove(module_id)
                        running[pool.submit(self._execute_module, ctx, module_id)] = module_id

                if not running:
                    if pending:
                        # Unreachable for a valid graph; guard against spinning
                        raise DeploymentError(
                            f"Scheduler stalled with pending modules: {', '.join(str(m) for m in pending)}"
                        )
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    future.result()

    def _set_status(self, ctx: _RunContext, module_id: ModuleId, status: ModuleStatus, message: Optional[str] = None) -> None:
        ctx.outcomes[module_id].status = status
        if ctx.progress_callback:
            ctx.progress_callback(module_id, status, message)

    def _finish(
        self,
        ctx: _RunContext,
        module_id: ModuleId,
        status: ModuleStatus,
        error: Optional[DeploymentError] = None
    ) -> None:
        outcome = ctx.outcomes[module_id]
        outcome.error = error
        outcome.end_time = self._now()
        if outcome.start_time is not None:
            outcome.duration = (outcome.end_time - outcome.start_time).total_seconds()

        extra = {
            'environment': module_id.environment,
            'module_path': module_id.path,
            'operation': ctx.operation.value,
            'duration': outcome.duration,
        }
        if status == ModuleStatus.FAILED:
            logger.error(f"Failed: {error.message if error else 'unknown error'}", extra=extra)
        elif status == ModuleStatus.SKIPPED:
            logger.warning(f"Skipped: {outcome.message()}", extra=extra)
        else:
            logger.info(f"{ctx.operation.value} succeeded", extra=extra)

        self._set_status(ctx, module_id, status, outcome.message())

    def _execute_module(self, ctx: _RunContext, module_id: ModuleId) -> None:
        """Drive one module through LOCKING, RESOLVING and EXECUTING."""
        outcome = ctx.outcomes[module_id]
        outcome.start_time = self._now()
        module = ctx.graph.get_module(module_id)
        context = ErrorContext(
            environment=module_id.environment,
            module=module_id.path,
            operation=ctx.operation.value,
            state_key=ctx.state_manager.state_key(module_id.path)
        )

        if self.cancel_event.is_set():
            self._finish(ctx, module_id, ModuleStatus.SKIPPED, error=OperationCancelledError())
            return

        self._set_status(ctx, module_id, ModuleStatus.LOCKING)
        try:
            handle = self._acquire_lock(ctx, context)
        except OperationCancelledError as e:
            self._finish(ctx, module_id, ModuleStatus.SKIPPED, error=e)
            return
        except DeploymentError as e:
            self._finish(ctx, module_id, ModuleStatus.FAILED, error=e)
            return
        except Exception as e:
            self._finish(ctx, module_id, ModuleStatus.FAILED, error=error_handler.handle_exception(e, context))
            return

        try:
            self._run_locked(ctx, module, handle, outcome, context)
        except DeploymentError as e:
            self._finish(ctx, module_id, ModuleStatus.FAILED, error=e)
        except Exception as e:
            self._finish(ctx, module_id, ModuleStatus.FAILED, error=error_handler.handle_exception(e, context))
        finally:
            self._release_lock(handle, outcome, context)

    def _release_lock(self, handle: LockHandle, outcome: ModuleOutcome, context: ErrorContext) -> None:
        """Release a module's lock. A failed release is noted on the outcome; the lock then lapses by TTL."""
        try:
            self.lock_manager.release(handle)
        except Exception as e:
            error = error_handler.handle_exception(e, context)
            logger.error(
                f"Could not release lock: {error.message}",
                extra={
                    'environment': context.environment,
                    'module_path': context.module,
                    'operation': context.operation,
                    'state_key': handle.key,
                }
            )
            note = f"lock release failed: {error.message}"
            outcome.diagnostics = f"{outcome.diagnostics}\n{note}" if outcome.diagnostics else note

    def _acquire_lock(self, ctx: _RunContext, context: ErrorContext) -> LockHandle:
        """Acquire the module's lock, backing off on contention."""
        strategy = RetryStrategy(
            max_retries=self.locking.max_attempts - 1,
            base_delay=self.locking.base_delay,
            max_delay=self.locking.max_delay,
            cancel_event=self.cancel_event
        )
        try:
            return strategy.execute_with_retry(
                self.lock_manager.acquire,
                context.state_key,
                self.holder,
                ttl=ctx.options.lock_ttl or self.locking.ttl,
                force=ctx.options.force
            )
        except ContentionError as e:
            raise LockTimeoutError(context.state_key, strategy.max_attempts, context=context, cause=e)

    def _run_locked(
        self,
        ctx: _RunContext,
        module: Module,
        handle: LockHandle,
        outcome: ModuleOutcome,
        context: ErrorContext
    ) -> None:
        module_id = module.id

        self._set_status(ctx, module_id, ModuleStatus.RESOLVING)
        current = ctx.state_manager.load_module_state(module_id.path)
        output_set = self._resolve(ctx, module)
        outcome.mocked_inputs = output_set.mocked_inputs()

        if self.cancel_event.is_set():
            self._finish(ctx, module_id, ModuleStatus.SKIPPED, error=OperationCancelledError())
            return

        if ctx.options.dry_run:
            outcome.diagnostics = "dry run: engine not invoked"
            self._finish(ctx, module_id, ModuleStatus.SUCCEEDED)
            return

        inputs = output_set.values_for(ctx.operation)

        self._set_status(ctx, module_id, ModuleStatus.EXECUTING)
        with LockRenewer(self.lock_manager, handle) as renewer:
            try:
                result = self.engine.execute(module, ctx.operation, inputs)
            except DeploymentError:
                raise
            except Exception as e:
                raise ProvisioningError(f"Engine raised {type(e).__name__}: {e}", context=context, cause=e)

        outcome.diagnostics = result.diagnostics
        if renewer.lost:
            self._report_lost_lock(module, outcome, renewer.error)
            return

        new_state = self._next_state(
            ctx.operation, current, output_set, result.success, result.outputs, ctx.options.version
        )
        if new_state is not None:
            ctx.state_manager.save_module_state(handle, new_state)

        if not result.success:
            raise ProvisioningError(
                f"{ctx.operation.value} failed",
                diagnostics=result.diagnostics,
                context=context
            )

        outcome.outputs = dict(result.outputs)
        self._finish(ctx, module_id, ModuleStatus.SUCCEEDED)

    def _resolve(self, ctx: _RunContext, module: Module) -> OutputSet:
        edges = ctx.graph.edges_of(module.id)
        states = {
            producer: ctx.state_manager.load_module_state(producer.path)
            for producer in {edge.producer for edge in edges}
        }
        output_set = self.resolver.resolve_module(module, states, ctx.resolve_operation, edges=edges)
        if output_set.has_mocked:
            logger.info(
                f"Using mocked outputs for inputs: {', '.join(output_set.mocked_inputs())}",
                extra={
                    'environment': module.environment,
                    'module_path': module.path,
                    'operation': ctx.operation.value
                }
            )
        return output_set

    def _next_state(
        self,
        operation: Operation,
        current: ModuleState,
        output_set: OutputSet,
        success: bool,
        outputs: Dict[str, Any],
        version: Optional[str] = None
    ) -> Optional[ModuleState]:
        """State to persist after the engine returned, or None to leave it untouched."""
        if operation == Operation.VALIDATE:
            return None
        if operation == Operation.PLAN:
            # Plans over placeholders say nothing about the real module
            if not success or output_set.has_mocked or current.lifecycle != LifecycleState.UNPLANNED:
                return None
            return current.model_copy(update={
                'lifecycle': LifecycleState.PLANNED,
                'last_operation': operation,
                'version': version,
            })
        if not success:
            # Keep prior outputs as partial state
            return current.model_copy(update={
                'lifecycle': LifecycleState.FAILED,
                'last_operation': operation,
                'version': version,
            })
        if operation == Operation.APPLY:
            return current.model_copy(update={
                'lifecycle': LifecycleState.APPLIED,
                'outputs': dict(outputs),
                'last_operation': operation,
                'version': version,
            })
        return current.model_copy(update={
            'lifecycle': LifecycleState.DESTROYED,
            'outputs': {},
            'last_operation': operation,
            'version': version,
        })

    def _report_lost_lock(self, module: Module, outcome: ModuleOutcome, error: LockLostError) -> None:
        """Mark a module failed after losing its lock, recording what it now exposes."""
        try:
            outcome.outputs = self.engine.read_outputs(module)
            outcome.diagnostics += f"\noutputs after lock loss: {sorted(outcome.outputs)}"
        except DeploymentError as e:
            outcome.diagnostics += f"\nfollow-up output read failed: {e.message}"
        raise error

    def _record(
        self,
        ctx: _RunContext,
        report: DeploymentReport,
        operation: RecordedOperation,
        rollback_of: Optional[str]
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            environment=ctx.environment,
            version=ctx.options.version,
            operation=operation,
            timestamp=report.end_time,
            status=report.deployment_status(),
            modules=[outcome.to_record() for outcome in report.outcomes.values()],
            rollback_of=rollback_of,
            deployed_by=self.holder,
            duration=report.duration,
        )
        snapshot = ctx.state_manager.snapshot(ctx.graph.modules, taken_at=report.end_time)
        return self.history.append(record, snapshot=snapshot)
