"""Resolution of dependency outputs into real or mocked values.

Every resolved input is tagged: ``RealOutput`` comes from a producer that is
applied, ``MockedOutput`` is a placeholder. Mocked values can be read for
read-only operations only; asking for them on behalf of apply or destroy
raises ``MockedOutputForbiddenError``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from infra_deploy.state.models import (
    Dependency,
    DependencyEdge,
    MockMergeStrategy,
    Module,
    ModuleId,
    ModuleState,
    Operation,
)
from infra_deploy.utils.errors import (
    ErrorContext,
    MockedOutputForbiddenError,
    UnresolvedDependencyError,
)
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class MockOrigin(str, Enum):
    """Where a mocked value came from."""

    DECLARED = "declared"
    PRIOR_STATE = "prior_state"


@dataclass(frozen=True)
class RealOutput:
    """Output recorded by an applied producer."""

    value: Any
    producer: ModuleId
    output_key: str

    @property
    def is_mocked(self) -> bool:
        return False


@dataclass(frozen=True)
class MockedOutput:
    """Placeholder standing in for an output that does not exist yet."""

    value: Any
    producer: ModuleId
    output_key: str
    origin: MockOrigin = MockOrigin.DECLARED

    @property
    def is_mocked(self) -> bool:
        return True


ResolvedOutput = Union[RealOutput, MockedOutput]


class OutputSet:
    """Resolved inputs of one module, keyed by input name."""

    def __init__(self, module_id: ModuleId, outputs: Optional[Dict[str, ResolvedOutput]] = None):
        self.module_id = module_id
        self._outputs: Dict[str, ResolvedOutput] = dict(outputs or {})

    @property
    def has_mocked(self) -> bool:
        return any(output.is_mocked for output in self._outputs.values())

    def mocked_inputs(self) -> List[str]:
        return [name for name, output in self._outputs.items() if output.is_mocked]

    def values_for(self, operation: Operation) -> Dict[str, Any]:
        """
        Plain input values to hand to the provisioning engine.

        Raises:
            MockedOutputForbiddenError: If the operation is destructive and any
                input is mocked
        """
        if operation.is_destructive and self.has_mocked:
            raise MockedOutputForbiddenError(
                f"Refusing to {operation.value} {self.module_id} with mocked inputs: "
                f"{', '.join(self.mocked_inputs())}",
                context=ErrorContext(
                    environment=self.module_id.environment,
                    module=self.module_id.path,
                    operation=operation.value
                )
            )
        return {name: output.value for name, output in self._outputs.items()}

    def __getitem__(self, name: str) -> ResolvedOutput:
        return self._outputs[name]

    def __contains__(self, name: str) -> bool:
        return name in self._outputs

    def __iter__(self) -> Iterator[str]:
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def items(self) -> Iterator[Tuple[str, ResolvedOutput]]:
        return iter(self._outputs.items())


class MockOutputResolver:
    """Decides, per consumed output, whether a real or mocked value is used."""

    def resolve(
        self,
        edge: DependencyEdge,
        dependency: Optional[Dependency],
        producer_state: Optional[ModuleState],
        operation: Operation
    ) -> ResolvedOutput:
        """
        Resolve one consumed output.

        Args:
            edge: Edge naming the producer and output key
            dependency: Consumer's declaration for the producer (mock settings)
            producer_state: Producer's recorded state, if any
            operation: Operation the consumer is about to run

        Returns:
            RealOutput or MockedOutput

        Raises:
            UnresolvedDependencyError: If the output is neither recorded nor
                mockable for this operation
        """
        key = edge.output_key
        recorded = producer_state.outputs if producer_state else {}

        if producer_state is not None and producer_state.is_applied and key in recorded:
            return RealOutput(recorded[key], edge.producer, key)

        if dependency is not None and dependency.mock_outputs and dependency.allows_mock_for(operation):
            mocked = self._mock_value(edge, dependency, recorded)
            if mocked is not None:
                return mocked

        raise self._unresolved(edge, producer_state, operation)

    def _mock_value(
        self,
        edge: DependencyEdge,
        dependency: Dependency,
        recorded: Mapping[str, Any]
    ) -> Optional[MockedOutput]:
        key = edge.output_key
        declared = key in dependency.mock_outputs
        prior = key in recorded
        strategy = dependency.mock_merge_strategy

        if strategy == MockMergeStrategy.PREFER_STATE and prior:
            return MockedOutput(recorded[key], edge.producer, key, MockOrigin.PRIOR_STATE)
        if declared:
            return MockedOutput(dependency.mock_outputs[key], edge.producer, key, MockOrigin.DECLARED)
        if strategy == MockMergeStrategy.PREFER_MOCK and prior:
            return MockedOutput(recorded[key], edge.producer, key, MockOrigin.PRIOR_STATE)
        return None

    def _unresolved(
        self,
        edge: DependencyEdge,
        producer_state: Optional[ModuleState],
        operation: Operation
    ) -> UnresolvedDependencyError:
        lifecycle = producer_state.lifecycle.value if producer_state else "unknown"
        if producer_state is not None and producer_state.is_applied:
            reason = f"output '{edge.output_key}' was not recorded by the producer"
        elif operation.is_destructive:
            reason = f"producer is {lifecycle} and mocks are never used for {operation.value}"
        else:
            reason = f"producer is {lifecycle} and no mock is declared for {operation.value}"
        return UnresolvedDependencyError(
            f"Cannot resolve input '{edge.input_name}' of {edge.consumer} "
            f"from {edge.producer}: {reason}",
            consumer=str(edge.consumer),
            producer=str(edge.producer),
            output_key=edge.output_key,
            context=ErrorContext(
                environment=edge.consumer.environment,
                module=edge.consumer.path,
                operation=operation.value
            )
        )

    def resolve_module(
        self,
        module: Module,
        producer_states: Mapping[ModuleId, ModuleState],
        operation: Operation,
        edges: Optional[List[DependencyEdge]] = None
    ) -> OutputSet:
        """
        Resolve every input a module consumes.

        Args:
            module: Consumer module
            producer_states: Recorded state of each producer
            operation: Operation the consumer is about to run
            edges: Incoming edges (defaults to the module's declared edges)

        Returns:
            OutputSet keyed by input name

        Raises:
            UnresolvedDependencyError: On the first input that cannot be resolved
        """
        edges = module.edges() if edges is None else edges
        outputs: Dict[str, ResolvedOutput] = {}

        for edge in edges:
            producer_state = producer_states.get(edge.producer)
            if not edge.output_key:
                # Ordering-only edge: apply still needs the producer in place
                if operation == Operation.APPLY and not (producer_state and producer_state.is_applied):
                    raise UnresolvedDependencyError(
                        f"{edge.consumer} must be applied after {edge.producer}, which is not applied",
                        consumer=str(edge.consumer),
                        producer=str(edge.producer),
                        context=ErrorContext(
                            environment=module.environment,
                            module=module.path,
                            operation=operation.value
                        )
                    )
                continue

            dependency = module.get_dependency(edge.producer)
            outputs[edge.input_name] = self.resolve(edge, dependency, producer_state, operation)

        output_set = OutputSet(module.id, outputs)
        logger.debug(
            f"Resolved {len(output_set)} inputs of {module.id} for {operation.value} "
            f"({len(output_set.mocked_inputs())} mocked)"
        )
        return output_set
