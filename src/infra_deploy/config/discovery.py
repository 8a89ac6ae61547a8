"""Discovery of modules from ``module.yaml`` files in the live tree."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from infra_deploy.state.models import Module, normalize_path
from infra_deploy.utils.errors import ConfigValidationError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)

MODULE_MARKER = "module.yaml"

DEFAULT_EXCLUDES = [
    ".git",
    ".terraform",
    ".terragrunt-cache",
    "__pycache__",
    "node_modules",
]


class ModuleDiscovery:
    """Find module definitions under ``<live_root>/<environment>``."""

    def __init__(self, repo_root: Path, live_root: str, exclude_patterns: Optional[List[str]] = None):
        """Initialize module discovery.

        Args:
            repo_root: Repository root
            live_root: Live configuration root (repository relative)
            exclude_patterns: Directory names never descended into
        """
        self.repo_root = Path(repo_root)
        self.live_root = normalize_path(live_root)
        self.exclude_patterns = exclude_patterns if exclude_patterns is not None else DEFAULT_EXCLUDES

    def environment_root(self, environment: str) -> Path:
        return self.repo_root / self.live_root / environment

    def discover(self, environment: str) -> List[Module]:
        """Discover the modules of one environment.

        A directory holding ``module.yaml`` is a module; its path is the
        directory relative to the environment root. Directories below a module
        are not searched.

        Args:
            environment: Environment name

        Returns:
            Modules sorted by path

        Raises:
            ConfigValidationError: If a module.yaml is malformed
        """
        env_root = self.environment_root(environment)
        if not env_root.is_dir():
            logger.warning(f"No live directory for environment: {env_root}", extra={'environment': environment})
            return []

        modules = []
        errors: List[Dict] = []
        exclude_set = set(self.exclude_patterns)

        for dirpath, dirnames, filenames in os.walk(env_root):
            dirnames[:] = sorted(d for d in dirnames if d not in exclude_set)
            if MODULE_MARKER not in filenames:
                continue

            current = Path(dirpath)
            # Nested directories belong to this module
            dirnames.clear()
            if current == env_root:
                continue

            module_path = current.relative_to(env_root).as_posix()
            marker = current / MODULE_MARKER
            try:
                module = self._load_module(environment, module_path, marker)
            except ValidationError as e:
                for error in e.errors():
                    errors.append({
                        "loc": [str(marker.relative_to(self.repo_root))] + list(error["loc"]),
                        "msg": error["msg"],
                    })
                continue
            except (yaml.YAMLError, ValueError) as e:
                errors.append({"loc": [str(marker.relative_to(self.repo_root))], "msg": str(e)})
                continue
            modules.append(module)

        if errors:
            raise ConfigValidationError(
                f"Module discovery failed with {len(errors)} error(s)",
                errors,
            )

        logger.debug(f"Discovered {len(modules)} modules", extra={'environment': environment})
        return sorted(modules, key=lambda m: m.path)

    def _load_module(self, environment: str, module_path: str, marker: Path) -> Module:
        with open(marker, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("module.yaml must contain a mapping")

        data = dict(data)
        data["path"] = module_path
        data["environment"] = environment
        data.setdefault("config_path", marker.parent.relative_to(self.repo_root).as_posix())
        return Module(**data)

    def merge(self, declared: List[Module], discovered: List[Module]) -> List[Module]:
        """Declared modules first, then discovered ones not already declared."""
        known = {module.path for module in declared}
        return list(declared) + [module for module in discovered if module.path not in known]
