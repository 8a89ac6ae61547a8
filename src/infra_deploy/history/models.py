"""Data models for deployment history."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeploymentStatus(Enum):
    """Overall status of a recorded deployment."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecordedOperation(str, Enum):
    """Operations that leave a history record."""

    APPLY = "apply"
    DESTROY = "destroy"
    ROLLBACK = "rollback"


class ModuleOutcomeRecord(BaseModel):
    """Outcome of one module within a recorded deployment."""

    path: str = Field(..., description="Module path")
    status: str = Field(..., description="Terminal status (succeeded, failed, skipped)")
    error: Optional[str] = Field(None, description="Error message if failed or skipped")
    error_type: Optional[str] = Field(None, description="Error class name")
    duration: float = Field(0.0, description="Duration in seconds")


class DeploymentRecord(BaseModel):
    """Append-only record of one apply, destroy or rollback run."""

    record_id: str = Field("", description="Unique record ID (<environment>-<sequence>)")
    sequence: int = Field(0, description="Position in the environment's history")
    environment: str = Field(..., description="Environment name")
    version: Optional[str] = Field(None, description="Configuration version (commit id)")
    operation: RecordedOperation = Field(..., description="Recorded operation")
    timestamp: datetime = Field(..., description="Time the run finished")
    status: DeploymentStatus = Field(..., description="Overall status")
    modules: List[ModuleOutcomeRecord] = Field(default_factory=list)
    snapshot_ref: Optional[str] = Field(None, description="Key of the environment snapshot")
    rollback_of: Optional[str] = Field(None, description="Record this rollback restored")
    deployed_by: Optional[str] = Field(None, description="Lock holder identity of the run")
    duration: float = Field(0.0, description="Duration in seconds")

    @property
    def is_successful(self) -> bool:
        """Every module in the run succeeded."""
        return self.status == DeploymentStatus.SUCCESS

    def module_paths(self, status: Optional[str] = None) -> List[str]:
        return [m.path for m in self.modules if status is None or m.status == status]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_canonical_json(self) -> str:
        """Byte-stable JSON: sorted keys, no insignificant whitespace."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def checksum(self) -> str:
        """SHA-256 of the canonical JSON form."""
        return hashlib.sha256(self.to_canonical_json().encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        return cls.model_validate(data)
