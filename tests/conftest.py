"""
Shared test fixtures and configuration.
"""

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from infra_deploy.config.models import EnvironmentConfig, LockingConfig
from infra_deploy.engine.base import EngineResult, ProvisioningEngine
from infra_deploy.orchestrator.executor import DeploymentExecutor
from infra_deploy.state.models import Dependency, Module, Operation
from infra_deploy.state.store import InMemoryStateStore

ENVIRONMENTS = ("dev", "staging", "prod")


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine(ProvisioningEngine):
    """Scripted engine: records every call and returns canned outputs."""

    def __init__(self, outputs: Optional[Dict[str, Dict[str, Any]]] = None):
        self.outputs = outputs or {}
        self.failures = set()  # module path, or (module path, operation)
        self.hooks: Dict[str, Callable[[Module, Operation, Dict[str, Any]], None]] = {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def execute(self, module: Module, operation: Operation, inputs: Dict[str, Any]) -> EngineResult:
        with self._lock:
            self.calls.append((module.id, operation, dict(inputs)))

        hook = self.hooks.get(module.path)
        if hook:
            hook(module, operation, inputs)

        if module.path in self.failures or (module.path, operation) in self.failures:
            return EngineResult(False, diagnostics=f"{operation.value} of {module.path} failed")

        outputs = dict(self.outputs.get(module.path, {})) if operation == Operation.APPLY else {}
        return EngineResult(True, outputs=outputs, diagnostics="ok")

    def read_outputs(self, module: Module) -> Dict[str, Any]:
        return dict(self.outputs.get(module.path, {}))

    def paths(self, operation: Optional[Operation] = None) -> List[str]:
        return [module_id.path for module_id, op, _ in self.calls if operation is None or op == operation]

    def inputs_of(self, path: str, operation: Operation) -> Dict[str, Any]:
        for module_id, op, inputs in self.calls:
            if module_id.path == path and op == operation:
                return inputs
        raise AssertionError(f"{path} was never called with {operation.value}")


def make_modules(environment: str) -> List[Module]:
    """vpc, compute (vpc.subnet_id, mocked) and db (vpc.subnet_id, no mock)."""
    return [
        Module(environment=environment, path="vpc", source="vpc"),
        Module(
            environment=environment,
            path="compute",
            source="compute",
            dependencies=[
                Dependency(
                    module="vpc",
                    outputs={"subnet_id": "subnet_id"},
                    mock_outputs={"subnet_id": "subnet-000000"},
                )
            ],
        ),
        Module(
            environment=environment,
            path="db",
            source="db",
            dependencies=[Dependency(module="vpc", outputs=["subnet_id"])],
        ),
    ]


def make_environments(names: Iterable[str] = ENVIRONMENTS) -> Dict[str, EnvironmentConfig]:
    return {
        name: EnvironmentConfig(name=name, modules=make_modules(name))
        for name in names
    }


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(outputs={
        "vpc": {"subnet_id": "subnet-123", "vpc_id": "vpc-1"},
        "compute": {"instance_id": "i-1"},
        "db": {"endpoint": "db.internal"},
    })


@pytest.fixture
def environments() -> Dict[str, EnvironmentConfig]:
    return make_environments()


@pytest.fixture
def locking() -> LockingConfig:
    """Short lock backoff so contention tests stay fast."""
    return LockingConfig(ttl=60, max_attempts=2, base_delay=0, max_delay=0)


@pytest.fixture
def executor(engine, store, environments, locking, clock) -> DeploymentExecutor:
    return DeploymentExecutor(
        engine=engine,
        store=store,
        environments=environments,
        locking=locking,
        holder="tester",
        clock=clock,
    )
