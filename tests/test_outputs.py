"""
Tests for output resolution: real values, mocks and destructive guards.
"""

import pytest

from infra_deploy.orchestrator.outputs import (
    MockedOutput,
    MockOrigin,
    MockOutputResolver,
    OutputSet,
    RealOutput,
)
from infra_deploy.state.models import (
    Dependency,
    LifecycleState,
    MockMergeStrategy,
    Module,
    ModuleId,
    ModuleState,
    Operation,
)
from infra_deploy.utils.errors import MockedOutputForbiddenError, UnresolvedDependencyError

from tests.conftest import make_modules

VPC = ModuleId("dev", "vpc")


def _state(lifecycle, **outputs):
    return ModuleState(environment="dev", path="vpc", lifecycle=lifecycle, outputs=outputs)


@pytest.fixture
def resolver():
    return MockOutputResolver()


@pytest.fixture
def modules():
    return {m.path: m for m in make_modules("dev")}


# ═══════════════════════════════════════════════════════════════════
#  Single output
# ═══════════════════════════════════════════════════════════════════


class TestResolve:
    """Per-edge real vs mocked decisions."""

    def test_applied_producer_gives_real_value(self, resolver, modules):
        compute = modules["compute"]
        edge = compute.edges()[0]
        state = _state(LifecycleState.APPLIED, subnet_id="subnet-123")

        for operation in Operation:
            result = resolver.resolve(edge, compute.dependencies[0], state, operation)
            assert isinstance(result, RealOutput)
            assert result.value == "subnet-123"

    def test_unapplied_producer_mocked_for_plan(self, resolver, modules):
        compute = modules["compute"]
        result = resolver.resolve(compute.edges()[0], compute.dependencies[0], None, Operation.PLAN)
        assert isinstance(result, MockedOutput)
        assert result.value == "subnet-000000"
        assert result.origin == MockOrigin.DECLARED

    @pytest.mark.parametrize("operation", [Operation.APPLY, Operation.DESTROY])
    def test_unapplied_producer_never_mocked_for_destructive(self, resolver, modules, operation):
        compute = modules["compute"]
        with pytest.raises(UnresolvedDependencyError) as exc:
            resolver.resolve(compute.edges()[0], compute.dependencies[0], None, operation)
        assert exc.value.producer == "dev/vpc"
        assert exc.value.output_key == "subnet_id"

    def test_no_mock_declared(self, resolver, modules):
        db = modules["db"]
        with pytest.raises(UnresolvedDependencyError, match="no mock is declared"):
            resolver.resolve(db.edges()[0], db.dependencies[0], None, Operation.PLAN)

    def test_operation_not_in_allow_list(self, resolver):
        dep = Dependency(
            module="vpc",
            outputs=["subnet_id"],
            mock_outputs={"subnet_id": "x"},
            mock_outputs_allowed_operations=[Operation.VALIDATE],
        )
        module = Module(environment="dev", path="app", dependencies=[dep])
        edge = module.edges()[0]
        assert resolver.resolve(edge, dep, None, Operation.VALIDATE).is_mocked
        with pytest.raises(UnresolvedDependencyError):
            resolver.resolve(edge, dep, None, Operation.PLAN)

    def test_applied_without_key_is_unresolved(self, resolver, modules):
        compute = modules["compute"]
        state = _state(LifecycleState.APPLIED, vpc_id="vpc-1")
        with pytest.raises(UnresolvedDependencyError, match="not recorded"):
            resolver.resolve(compute.edges()[0], compute.dependencies[0], state, Operation.APPLY)

    def test_failed_producer_outputs_are_not_real(self, resolver, modules):
        compute = modules["compute"]
        state = _state(LifecycleState.FAILED, subnet_id="subnet-old")
        result = resolver.resolve(compute.edges()[0], compute.dependencies[0], state, Operation.PLAN)
        assert result.is_mocked
        assert result.value == "subnet-000000"


class TestMergeStrategy:
    """Combining declared mocks with partial prior state."""

    def _dependency(self, strategy, mocks):
        return Dependency(
            module="vpc",
            outputs=["subnet_id", "vpc_id"],
            mock_outputs=mocks,
            mock_merge_strategy=strategy,
        )

    def _edges(self, dep):
        return {e.output_key: e for e in Module(environment="dev", path="app", dependencies=[dep]).edges()}

    def test_prefer_state_uses_prior_values(self, resolver):
        dep = self._dependency(MockMergeStrategy.PREFER_STATE, {"subnet_id": "mock", "vpc_id": "mock"})
        state = _state(LifecycleState.FAILED, subnet_id="subnet-old")
        edges = self._edges(dep)

        subnet = resolver.resolve(edges["subnet_id"], dep, state, Operation.PLAN)
        vpc = resolver.resolve(edges["vpc_id"], dep, state, Operation.PLAN)
        assert (subnet.value, subnet.origin) == ("subnet-old", MockOrigin.PRIOR_STATE)
        assert (vpc.value, vpc.origin) == ("mock", MockOrigin.DECLARED)

    def test_prefer_mock_falls_back_to_prior(self, resolver):
        dep = self._dependency(MockMergeStrategy.PREFER_MOCK, {"subnet_id": "mock"})
        state = _state(LifecycleState.PLANNED, subnet_id="subnet-old", vpc_id="vpc-old")
        edges = self._edges(dep)

        assert resolver.resolve(edges["subnet_id"], dep, state, Operation.PLAN).value == "mock"
        vpc = resolver.resolve(edges["vpc_id"], dep, state, Operation.PLAN)
        assert (vpc.value, vpc.origin) == ("vpc-old", MockOrigin.PRIOR_STATE)

    def test_no_merge_ignores_prior(self, resolver):
        dep = self._dependency(MockMergeStrategy.NO_MERGE, {"subnet_id": "mock"})
        state = _state(LifecycleState.PLANNED, vpc_id="vpc-old")
        with pytest.raises(UnresolvedDependencyError):
            resolver.resolve(self._edges(dep)["vpc_id"], dep, state, Operation.PLAN)


# ═══════════════════════════════════════════════════════════════════
#  Whole module
# ═══════════════════════════════════════════════════════════════════


class TestResolveModule:
    """OutputSet construction and the destructive guard."""

    def test_mixed_real_and_mocked(self, resolver):
        module = Module(
            environment="dev",
            path="app",
            dependencies=[
                Dependency(module="vpc", outputs={"subnet": "subnet_id"}),
                Dependency(module="dns", outputs=["zone_id"], mock_outputs={"zone_id": "Z000"}),
            ],
        )
        states = {VPC: _state(LifecycleState.APPLIED, subnet_id="subnet-123")}
        output_set = resolver.resolve_module(module, states, Operation.PLAN)

        assert output_set.has_mocked
        assert output_set.mocked_inputs() == ["zone_id"]
        assert output_set.values_for(Operation.PLAN) == {"subnet": "subnet-123", "zone_id": "Z000"}
        with pytest.raises(MockedOutputForbiddenError):
            output_set.values_for(Operation.APPLY)

    def test_ordering_only_edge(self, resolver):
        module = Module(environment="dev", path="app", dependencies=[Dependency(module="vpc")])
        assert len(resolver.resolve_module(module, {}, Operation.PLAN)) == 0
        with pytest.raises(UnresolvedDependencyError, match="must be applied after"):
            resolver.resolve_module(module, {}, Operation.APPLY)
        states = {VPC: _state(LifecycleState.APPLIED)}
        assert len(resolver.resolve_module(module, states, Operation.APPLY)) == 0

    def test_real_only_set_allows_apply(self):
        output_set = OutputSet(ModuleId("dev", "app"), {"subnet": RealOutput("s-1", VPC, "subnet_id")})
        assert output_set.values_for(Operation.APPLY) == {"subnet": "s-1"}
        assert "subnet" in output_set
        assert list(output_set) == ["subnet"]


class TestDependencyValidation:
    """Mock allow-lists are validated at declaration time."""

    def test_destructive_operation_rejected(self):
        with pytest.raises(ValueError, match="destructive"):
            Dependency(
                module="vpc",
                mock_outputs={"id": "x"},
                mock_outputs_allowed_operations=[Operation.PLAN, Operation.APPLY],
            )

    def test_output_list_is_identity_mapping(self):
        dep = Dependency(module="./vpc/", outputs=["a", "b"])
        assert dep.module == "vpc"
        assert dep.outputs == {"a": "a", "b": "b"}
