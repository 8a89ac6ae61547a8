"""Module, dependency and persisted state models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field, field_validator


class Operation(str, Enum):
    """Operation the provisioning engine is asked to perform."""

    PLAN = "plan"
    VALIDATE = "validate"
    APPLY = "apply"
    DESTROY = "destroy"

    @property
    def is_destructive(self) -> bool:
        """Whether the operation mutates real infrastructure."""
        return self in (Operation.APPLY, Operation.DESTROY)


class LifecycleState(str, Enum):
    """Persisted lifecycle of a module."""

    UNPLANNED = "unplanned"
    PLANNED = "planned"
    APPLIED = "applied"
    FAILED = "failed"
    DESTROYED = "destroyed"


class MockMergeStrategy(str, Enum):
    """How declared mocks combine with a producer's partial prior state."""

    NO_MERGE = "no_merge"
    PREFER_STATE = "prefer_state"
    PREFER_MOCK = "prefer_mock"


class ModuleId(NamedTuple):
    """Identity of a module: its environment and path within it."""

    environment: str
    path: str

    def __str__(self) -> str:
        return f"{self.environment}/{self.path}"


@dataclass(frozen=True)
class DependencyEdge:
    """One consumed output: consumer <- producer.output_key."""

    consumer: ModuleId
    producer: ModuleId
    output_key: str
    input_name: str


def normalize_path(value: str) -> str:
    """Normalize a repository-relative path to posix form without edge slashes."""
    path = value.replace("\\", "/").strip()
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


class Dependency(BaseModel):
    """Dependency declared by a consumer module on a producer's outputs."""

    module: str = Field(..., min_length=1, description="Producer module path")
    environment: Optional[str] = Field(
        None, description="Producer environment (defaults to the consumer's)"
    )
    outputs: Dict[str, str] = Field(
        default_factory=dict, description="Consumer input name -> producer output key"
    )
    mock_outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Placeholder values keyed by producer output key"
    )
    mock_outputs_allowed_operations: List[Operation] = Field(
        default_factory=lambda: [Operation.PLAN, Operation.VALIDATE],
        description="Operations that may consume mocked outputs",
    )
    mock_merge_strategy: MockMergeStrategy = MockMergeStrategy.NO_MERGE

    @field_validator("module")
    @classmethod
    def validate_module(cls, v: str) -> str:
        """Normalize producer path."""
        return normalize_path(v)

    @field_validator("outputs", mode="before")
    @classmethod
    def expand_output_list(cls, v: Any) -> Any:
        """Accept a plain list of output keys as an identity mapping."""
        if isinstance(v, (list, tuple)):
            return {key: key for key in v}
        return v

    @field_validator("mock_outputs_allowed_operations")
    @classmethod
    def validate_allowed_operations(cls, v: List[Operation]) -> List[Operation]:
        """Mocked outputs may never reach an operation that changes infrastructure."""
        destructive = [op.value for op in v if op.is_destructive]
        if destructive:
            raise ValueError(
                f"Mocked outputs cannot be allowed for destructive operations: {', '.join(destructive)}"
            )
        return v

    def allows_mock_for(self, operation: Operation) -> bool:
        """Check whether mocks may be used for the operation."""
        return not operation.is_destructive and operation in self.mock_outputs_allowed_operations


class Module(BaseModel):
    """Unit of infrastructure configuration scoped to one environment."""

    environment: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1, description="Module path within the environment")
    source: Optional[str] = Field(None, description="Shared library root this module instantiates")
    config_path: Optional[str] = Field(
        None, description="Live configuration directory (repository relative)"
    )
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Static input values")
    dependencies: List[Dependency] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Module paths are relative and never escape the environment."""
        path = normalize_path(v)
        if not path:
            raise ValueError("Module path cannot be empty")
        if ".." in path.split("/"):
            raise ValueError(f"Module path cannot contain '..': {v}")
        return path

    @field_validator("source", "config_path")
    @classmethod
    def validate_optional_path(cls, v: Optional[str]) -> Optional[str]:
        return normalize_path(v) if v else v

    @property
    def id(self) -> ModuleId:
        return ModuleId(self.environment, self.path)

    def live_path(self, live_root: str) -> str:
        """Directory holding this module's live configuration."""
        if self.config_path:
            return self.config_path
        return "/".join(part for part in (normalize_path(live_root), self.environment, self.path) if part)

    def edges(self) -> List[DependencyEdge]:
        """Expand declared dependencies into one edge per consumed output."""
        edges = []
        for dependency in self.dependencies:
            producer = ModuleId(dependency.environment or self.environment, dependency.module)
            if not dependency.outputs:
                # Ordering-only dependency
                edges.append(DependencyEdge(self.id, producer, "", ""))
                continue
            for input_name, output_key in dependency.outputs.items():
                edges.append(DependencyEdge(self.id, producer, output_key, input_name))
        return edges

    def get_dependency(self, producer: ModuleId) -> Optional[Dependency]:
        """Find the declaration that produced edges to ``producer``."""
        for dependency in self.dependencies:
            if ModuleId(dependency.environment or self.environment, dependency.module) == producer:
                return dependency
        return None


class ModuleState(BaseModel):
    """Recorded state of one module, stored under its state key."""

    environment: str
    path: str
    lifecycle: LifecycleState = LifecycleState.UNPLANNED
    outputs: Dict[str, Any] = Field(default_factory=dict)
    last_operation: Optional[Operation] = None
    version: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_applied(self) -> bool:
        return self.lifecycle == LifecycleState.APPLIED

    @classmethod
    def empty(cls, module_id: ModuleId) -> "ModuleState":
        """State of a module that was never touched."""
        return cls(environment=module_id.environment, path=module_id.path)


class EnvironmentSnapshot(BaseModel):
    """Module definitions and states of an environment at one point in time."""

    environment: str
    taken_at: datetime
    modules: List[Module] = Field(default_factory=list)
    states: Dict[str, ModuleState] = Field(default_factory=dict)

    def applied_paths(self) -> List[str]:
        """Paths of modules that were applied when the snapshot was taken."""
        return [path for path, state in self.states.items() if state.is_applied]
