"""Provisioning engine interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from infra_deploy.state.models import Module, Operation


@dataclass
class EngineResult:
    """Result of one engine invocation."""
    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    diagnostics: str = ""


class ProvisioningEngine(ABC):
    """Base class for the external tool that creates and destroys resources.

    The orchestrator treats modules as opaque: the engine receives the module,
    the operation and the resolved input values, and reports the outputs the
    module now exposes.
    """

    @abstractmethod
    def execute(self, module: Module, operation: Operation, inputs: Dict[str, Any]) -> EngineResult:
        """Run an operation on a module.

        Args:
            module: Module to operate on
            operation: Operation to perform
            inputs: Resolved input values (static inputs are merged by the engine)

        Returns:
            EngineResult with outputs after apply
        """
        pass

    @abstractmethod
    def read_outputs(self, module: Module) -> Dict[str, Any]:
        """Read the outputs the module currently exposes.

        Args:
            module: Module to inspect

        Returns:
            Output key -> value
        """
        pass
