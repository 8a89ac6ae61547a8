"""Mapping of changed repository paths to affected modules."""

import subprocess
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from infra_deploy.state.models import Module, ModuleId, normalize_path
from infra_deploy.utils.errors import DeploymentError, ErrorCategory
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ModuleOwnershipMap:
    """Path prefixes and the modules that own them."""

    def __init__(self):
        self.entries: Dict[str, Set[ModuleId]] = {}

    def add(self, prefix: str, owners: Iterable[ModuleId]) -> None:
        """Register owners for a path prefix (owners accumulate)."""
        prefix = normalize_path(prefix)
        if not prefix:
            return
        self.entries.setdefault(prefix, set()).update(owners)

    def owners(self, path: str) -> Optional[Set[ModuleId]]:
        """
        Owners of a path by longest-prefix match on whole path components.

        Args:
            path: Repository-relative path

        Returns:
            Set of owning modules, or None if no prefix matches
        """
        parts = normalize_path(path).split("/")
        for i in range(len(parts), 0, -1):
            candidate = "/".join(parts[:i])
            if candidate in self.entries:
                return set(self.entries[candidate])
        return None

    @classmethod
    def from_environments(
        cls,
        environments: Mapping[str, List[Module]],
        live_root: str,
        library_root: Optional[str] = None
    ) -> "ModuleOwnershipMap":
        """
        Build ownership from the declared modules of every environment.

        Args:
            environments: Environment name -> modules
            live_root: Root of the live configuration tree
            library_root: Root of the shared module library

        Returns:
            Ownership map
        """
        ownership = cls()
        live_root = normalize_path(live_root)
        all_modules = [module for modules in environments.values() for module in modules]

        ownership.add(live_root, (module.id for module in all_modules))

        for environment, modules in environments.items():
            if live_root:
                ownership.add(f"{live_root}/{environment}", (module.id for module in modules))
            for module in modules:
                ownership.add(module.live_path(live_root), [module.id])

        for module in all_modules:
            if module.source:
                ownership.add(_library_path(module.source, library_root), [module.id])

        return ownership


def _library_path(source: str, library_root: Optional[str]) -> str:
    source = normalize_path(source)
    root = normalize_path(library_root or "")
    if not root or source == root or source.startswith(root + "/"):
        return source
    return f"{root}/{source}"


@dataclass
class ChangeSet:
    """Result of mapping a change set onto modules."""

    changed_paths: List[str]
    affected: Set[ModuleId] = field(default_factory=set)
    unmatched: List[str] = field(default_factory=list)

    @property
    def environments(self) -> List[str]:
        return sorted({module_id.environment for module_id in self.affected})

    def by_environment(self) -> Dict[str, List[str]]:
        """Affected module paths grouped by environment."""
        grouped: Dict[str, List[str]] = {}
        for module_id in sorted(self.affected):
            grouped.setdefault(module_id.environment, []).append(module_id.path)
        return grouped

    @property
    def is_empty(self) -> bool:
        return not self.affected


class ChangeDetector:
    """Determines which modules a set of changed paths affects."""

    def __init__(self, ownership: ModuleOwnershipMap):
        """
        Initialize ChangeDetector.

        Args:
            ownership: Path ownership map
        """
        self.ownership = ownership

    def affected(self, changed_paths: Iterable[str]) -> Set[ModuleId]:
        return self.detect(changed_paths).affected

    def detect(self, changed_paths: Iterable[str]) -> ChangeSet:
        """
        Map changed paths onto modules.

        Args:
            changed_paths: Repository-relative changed paths

        Returns:
            ChangeSet with affected modules and paths no module owns
        """
        change_set = ChangeSet(changed_paths=[normalize_path(p) for p in changed_paths])
        for path in change_set.changed_paths:
            owners = self.ownership.owners(path)
            if owners is None:
                change_set.unmatched.append(path)
                continue
            change_set.affected.update(owners)

        logger.debug(
            f"{len(change_set.changed_paths)} changed paths affect "
            f"{len(change_set.affected)} modules ({len(change_set.unmatched)} unmatched)"
        )
        return change_set


def affected(changed_paths: Iterable[str], ownership: ModuleOwnershipMap) -> Set[ModuleId]:
    """Modules affected by a change set."""
    return ChangeDetector(ownership).affected(changed_paths)


def changed_paths_from_git(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    List paths changed between two git revisions.

    Args:
        base: Base revision
        head: Head revision
        cwd: Repository directory

    Returns:
        Changed paths in git's order

    Raises:
        DeploymentError: If git fails
    """
    try:
        result = subprocess.run(
            ["git", "diff", "--name-only", base, head],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DeploymentError(
            f"Failed to run git: {e}",
            category=ErrorCategory.CONFIGURATION,
            cause=e
        )

    if result.returncode != 0:
        raise DeploymentError(
            f"git diff {base} {head} failed: {result.stderr.strip()}",
            category=ErrorCategory.CONFIGURATION,
            suggestions=['Check that both revisions exist locally (fetch with enough depth)']
        )

    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
