"""Provisioning engine driving the terraform or terragrunt CLI."""

import json
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from infra_deploy.engine.base import EngineResult, ProvisioningEngine
from infra_deploy.state.models import Module, Operation
from infra_deploy.utils.errors import ErrorContext, ProvisioningError
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class TerraformEngine(ProvisioningEngine):
    """Runs terraform (or terragrunt) inside each module's live directory.

    Inputs are passed by value through a generated ``*.auto.tfvars.json``
    file; terraform loads it automatically and terragrunt forwards it.
    """

    VARS_FILE = "infra-deploy.auto.tfvars.json"
    DIAGNOSTICS_TAIL = 4000

    OPERATION_ARGS = {
        Operation.PLAN: ["plan", "-input=false", "-no-color", "-detailed-exitcode"],
        Operation.VALIDATE: ["validate", "-no-color"],
        Operation.APPLY: ["apply", "-input=false", "-no-color", "-auto-approve"],
        Operation.DESTROY: ["destroy", "-input=false", "-no-color", "-auto-approve"],
    }

    def __init__(
        self,
        repo_root: str,
        live_root: str,
        binary: str = "terraform",
        timeout: int = 3600,
        extra_env: Optional[Dict[str, str]] = None
    ):
        """
        Initialize TerraformEngine.

        Args:
            repo_root: Repository root directory
            live_root: Live configuration root, relative to the repository
            binary: CLI to run (terraform or terragrunt)
            timeout: Timeout in seconds for each CLI call
            extra_env: Additional environment variables for the CLI
        """
        self.repo_root = Path(repo_root)
        self.live_root = live_root
        self.binary = binary
        self.timeout = timeout
        self.extra_env = extra_env or {}

    def working_dir(self, module: Module) -> Path:
        return self.repo_root / module.live_path(self.live_root)

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({"TF_IN_AUTOMATION": "1", "TF_INPUT": "0"})
        env.update(self.extra_env)
        return env

    def _run(self, args: List[str], cwd: Path) -> subprocess.CompletedProcess:
        logger.debug(f"Running {self.binary} {' '.join(args)} in {cwd}")
        return subprocess.run(
            [self.binary, *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=self.timeout,
            env=self._env(),
        )

    def _tail(self, result: subprocess.CompletedProcess) -> str:
        output = (result.stdout or "") + (result.stderr or "")
        return output.strip()[-self.DIAGNOSTICS_TAIL:]

    def _write_inputs(self, module: Module, cwd: Path, inputs: Dict[str, Any]) -> None:
        values = dict(module.inputs)
        values.update(inputs)
        with open(cwd / self.VARS_FILE, "w") as f:
            json.dump(values, f, indent=2, sort_keys=True)

    def execute(self, module: Module, operation: Operation, inputs: Dict[str, Any]) -> EngineResult:
        cwd = self.working_dir(module)
        if not cwd.is_dir():
            return EngineResult(False, diagnostics=f"Module directory not found: {cwd}")

        try:
            self._write_inputs(module, cwd, inputs)

            init = self._run(["init", "-input=false", "-no-color"], cwd)
            if init.returncode != 0:
                return EngineResult(False, diagnostics=f"{self.binary} init failed:\n{self._tail(init)}")

            result = self._run(self.OPERATION_ARGS[operation], cwd)
        except FileNotFoundError:
            return EngineResult(False, diagnostics=f"{self.binary} CLI not available")
        except subprocess.TimeoutExpired:
            return EngineResult(
                False, diagnostics=f"{self.binary} {operation.value} timed out ({self.timeout}s)"
            )

        # plan -detailed-exitcode returns 2 when changes are pending
        ok_codes = (0, 2) if operation == Operation.PLAN else (0,)
        if result.returncode not in ok_codes:
            return EngineResult(False, diagnostics=self._tail(result))

        outputs: Dict[str, Any] = {}
        if operation == Operation.APPLY:
            try:
                outputs = self.read_outputs(module)
            except ProvisioningError as e:
                return EngineResult(False, diagnostics=e.diagnostics or e.message)

        return EngineResult(True, outputs=outputs, diagnostics=self._tail(result))

    def read_outputs(self, module: Module) -> Dict[str, Any]:
        """
        Read outputs with ``output -json``.

        Raises:
            ProvisioningError: If the CLI fails or prints invalid JSON
        """
        cwd = self.working_dir(module)
        context = ErrorContext(environment=module.environment, module=module.path)
        try:
            result = self._run(["output", "-json"], cwd)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise ProvisioningError(f"Failed to read outputs of {module.id}: {e}", context=context, cause=e)

        if result.returncode != 0:
            raise ProvisioningError(
                f"Failed to read outputs of {module.id}",
                diagnostics=self._tail(result),
                context=context
            )

        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProvisioningError(
                f"Invalid output JSON from {module.id}: {e}", context=context, cause=e
            )
        return {key: value.get("value") for key, value in raw.items()}
