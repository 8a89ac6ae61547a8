"""YAML configuration parser for infra-deploy."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from infra_deploy.config.discovery import ModuleDiscovery
from infra_deploy.config.models import (
    BackendConfig,
    EnvironmentConfig,
    ExecutionConfig,
    LockingConfig,
    ProjectConfig,
)
from infra_deploy.state.manager import validate_state_namespaces
from infra_deploy.state.models import Module
from infra_deploy.utils.errors import ConfigurationError, ConfigValidationError, StateNamespaceError

DEFAULT_CONFIG_FILE = "infra.yaml"


class Config:
    """Configuration manager for infra-deploy."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to infra.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.repo_root = self.config_path.resolve().parent
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.backend = BackendConfig()
        self.locking = LockingConfig()
        self.execution = ExecutionConfig()
        self.environments: Dict[str, EnvironmentConfig] = {}

    @classmethod
    def from_dict(cls, data: Dict, repo_root: Optional[str] = None) -> "Config":
        """Build a configuration from already-parsed data.

        Args:
            data: Configuration mapping
            repo_root: Repository root used for module discovery

        Returns:
            Loaded configuration

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        config = cls(str(Path(repo_root or ".") / DEFAULT_CONFIG_FILE))
        config.data = data or {}
        return config._finish_load()

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self._finish_load()

    def _finish_load(self) -> "Config":
        if not isinstance(self.data, dict):
            raise ConfigValidationError(
                "Configuration validation failed with 1 error(s)",
                [{"loc": [], "msg": "Configuration must be a mapping"}],
            )

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self._parse_sections()
        self._parse_environments()

        # Structure errors only show up once every environment is parsed
        structure_errors = self.validate_structure()
        if structure_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(structure_errors)} error(s)",
                structure_errors,
            )

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._check_model(ProjectConfig, self.data["project"], ["project"]))

        for section, model in (
            ("backend", BackendConfig),
            ("locking", LockingConfig),
            ("execution", ExecutionConfig),
        ):
            if section in self.data:
                errors.extend(self._check_model(model, self.data[section], [section]))

        if "environments" not in self.data:
            errors.append({"loc": ["environments"], "msg": "Required field 'environments' is missing"})
        elif not isinstance(self.data["environments"], dict) or not self.data["environments"]:
            errors.append(
                {"loc": ["environments"], "msg": "Environments must be a non-empty dictionary"}
            )
        else:
            for env_name, env_data in self.data["environments"].items():
                errors.extend(
                    self._check_model(
                        EnvironmentConfig,
                        self._environment_data(env_name, env_data),
                        ["environments", env_name],
                    )
                )

        return errors

    def validate_structure(self) -> List[Dict]:
        """Validate state namespaces and each environment's dependency graph.

        Returns:
            List of validation errors (empty if valid)
        """
        # Imported here: the orchestrator package imports this module
        from infra_deploy.orchestrator.dependency_graph import DependencyGraph

        errors = []
        try:
            validate_state_namespaces(
                {name: env.state_prefix for name, env in self.environments.items()}
            )
        except StateNamespaceError as e:
            errors.append({"loc": ["environments"], "msg": e.message})

        for name, env in self.environments.items():
            try:
                DependencyGraph.build(env.modules)
            except ConfigurationError as e:
                errors.append({"loc": ["environments", name, "modules"], "msg": e.message})

        return errors

    def _check_model(self, model: type, data: Any, loc: List) -> List[Dict]:
        if not isinstance(data, dict):
            return [{"loc": loc, "msg": "Must be a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": loc + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def _environment_data(self, env_name: str, env_data: Optional[Dict]) -> Any:
        """Inject the environment name into the environment and its modules."""
        if env_data is None:
            env_data = {}
        if not isinstance(env_data, dict):
            return env_data

        modules = env_data.get("modules") or []
        if isinstance(modules, list):
            modules = [
                {"environment": env_name, **module} if isinstance(module, dict) else module
                for module in modules
            ]
        return {**env_data, "name": env_name, "modules": modules}

    def _parse_sections(self):
        """Parse project, backend, locking and execution sections."""
        self.project = ProjectConfig(**self.data["project"])
        self.backend = BackendConfig(**self.data.get("backend", {}))
        self.locking = LockingConfig(**self.data.get("locking", {}))
        self.execution = ExecutionConfig(**self.data.get("execution", {}))

    def _parse_environments(self):
        """Parse environments, adding discovered modules where enabled."""
        self.environments = {}
        discovery = ModuleDiscovery(self.repo_root, self.project.live_root)

        for env_name, env_data in self.data["environments"].items():
            env = EnvironmentConfig(**self._environment_data(env_name, env_data))
            if env.discover:
                env.modules = discovery.merge(env.modules, discovery.discover(env_name))
            self.environments[env_name] = env

    def get_environment(self, env_name: str) -> EnvironmentConfig:
        """Get environment configuration.

        Args:
            env_name: Environment name

        Returns:
            Environment configuration

        Raises:
            ConfigurationError: If environment doesn't exist
        """
        if env_name not in self.environments:
            available = ", ".join(self.environments.keys())
            raise ConfigurationError(
                f"Environment '{env_name}' not found. Available environments: {available}"
            )

        return self.environments[env_name]

    def get_module(self, env_name: str, path: str) -> Optional[Module]:
        return self.get_environment(env_name).get_module(path)

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        sections: Dict[str, Optional[BaseModel]] = {
            "project": self.project,
            "backend": self.backend,
            "locking": self.locking,
            "execution": self.execution,
        }
        result = {name: model.model_dump() if model else {} for name, model in sections.items()}
        result["environments"] = {
            name: env.model_dump(mode="json") for name, env in self.environments.items()
        }
        return result
