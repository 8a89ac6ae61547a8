"""Pydantic models for configuration schema."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from infra_deploy.state.models import Module, normalize_path


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    live_root: str = Field("infrastructure-live", description="Root of the live configuration tree")
    library_root: str = Field("infrastructure-modules", description="Root of the shared module library")

    @field_validator("live_root", "library_root")
    @classmethod
    def validate_roots(cls, v: str) -> str:
        """Roots are repository relative."""
        path = normalize_path(v)
        if ".." in path.split("/"):
            raise ValueError(f"Path must stay inside the repository: {v}")
        return path


class BackendConfig(BaseModel):
    """State backend configuration."""

    type: str = Field("local", pattern="^(local|dynamodb|memory)$")
    path: str = Field(".infra-deploy/state", description="Directory for the local backend")
    table: Optional[str] = Field(None, description="DynamoDB table for the dynamodb backend")
    region: Optional[str] = None
    profile: Optional[str] = None

    @model_validator(mode="after")
    def validate_backend(self):
        """The dynamodb backend needs a table."""
        if self.type == "dynamodb" and not self.table:
            raise ValueError("'table' is required for the dynamodb backend")
        return self


class LockingConfig(BaseModel):
    """Lock acquisition configuration."""

    ttl: float = Field(900.0, gt=0, description="Lock time-to-live in seconds")
    max_attempts: int = Field(5, ge=1, description="Acquisition attempts before giving up")
    base_delay: float = Field(2.0, ge=0, description="First backoff delay in seconds")
    max_delay: float = Field(30.0, ge=0, description="Backoff delay cap in seconds")


class ExecutionConfig(BaseModel):
    """Execution configuration."""

    concurrency: int = Field(4, ge=1, description="Parallel modules per environment")
    environment_concurrency: int = Field(2, ge=1, description="Parallel environments")
    engine: str = Field("terraform", pattern="^(terraform|terragrunt)$")
    engine_binary: Optional[str] = Field(None, description="Override for the engine executable")
    engine_timeout: int = Field(3600, gt=0, description="Timeout per engine call in seconds")
    fail_fast: bool = Field(True, description="Abort before execution on unresolvable inputs")


class EnvironmentConfig(BaseModel):
    """Environment: ordered modules plus an isolated state namespace."""

    name: str = Field(..., min_length=1, pattern="^[A-Za-z0-9_-]+$")
    state_prefix: Optional[str] = Field(None, description="State key prefix (defaults to state/<name>)")
    discover: bool = Field(False, description="Discover modules from module.yaml files")
    modules: List[Module] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v == "all":
            raise ValueError("'all' is reserved and cannot name an environment")
        return v

    @model_validator(mode="after")
    def validate_environment(self):
        """Default the state prefix and keep modules inside this environment."""
        if not self.state_prefix:
            self.state_prefix = f"state/{self.name}"
        self.state_prefix = normalize_path(self.state_prefix)
        for module in self.modules:
            if module.environment != self.name:
                raise ValueError(
                    f"Module '{module.path}' belongs to '{module.environment}', not '{self.name}'"
                )
        return self

    def get_module(self, path: str) -> Optional[Module]:
        path = normalize_path(path)
        for module in self.modules:
            if module.path == path:
                return module
        return None
