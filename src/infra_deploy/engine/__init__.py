"""Provisioning engines that execute module operations."""

from .base import EngineResult, ProvisioningEngine
from .terraform import TerraformEngine

__all__ = [
    "EngineResult",
    "ProvisioningEngine",
    "TerraformEngine",
]
