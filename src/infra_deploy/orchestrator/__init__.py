"""Orchestrator module for dependency ordering, execution and rollback."""

from infra_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from infra_deploy.orchestrator.outputs import (
    MockOrigin,
    MockOutputResolver,
    MockedOutput,
    OutputSet,
    RealOutput,
)
from infra_deploy.orchestrator.change_detector import (
    ChangeDetector,
    ChangeSet,
    ModuleOwnershipMap,
    affected,
    changed_paths_from_git,
)
from infra_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentReport,
    ExecutionOptions,
    ModuleOutcome,
    ModuleStatus,
    ProgressCallback
)
from infra_deploy.orchestrator.rollback import (
    RollbackManager,
    RollbackPlan,
    RollbackResult
)
from infra_deploy.orchestrator.orchestrator import DeploymentOrchestrator, OrchestrationResult

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Outputs
    'MockOrigin',
    'MockOutputResolver',
    'MockedOutput',
    'OutputSet',
    'RealOutput',

    # Change detection
    'ChangeDetector',
    'ChangeSet',
    'ModuleOwnershipMap',
    'affected',
    'changed_paths_from_git',

    # Execution
    'DeploymentExecutor',
    'DeploymentReport',
    'ExecutionOptions',
    'ModuleOutcome',
    'ModuleStatus',
    'ProgressCallback',

    # Rollback
    'RollbackManager',
    'RollbackPlan',
    'RollbackResult',

    # Main orchestrator
    'DeploymentOrchestrator',
    'OrchestrationResult',
]
