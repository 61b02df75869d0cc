"""Terraform wrapper for module-targeted destroys.

Destroy results come back as ModuleDestroyResult. Success is decided by
the exit status; the textual marker ("Destroy complete") is only
reported alongside, since its wording belongs to Terraform and may change.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import TerraformConfig
from .exceptions import TerraformError
from .models import ALL_REMAINING, ModuleDestroyResult
from .shell import CommandRunner

logger = logging.getLogger(__name__)


class TerraformWorkspace:
    """A local Terraform working directory created by the installer."""

    def __init__(self, config: TerraformConfig, runner: CommandRunner | None = None):
        self.config = config
        self.path = Path(config.workspace_dir)
        self.runner = runner or CommandRunner()
        self._state: list[str] | None = None

    def exists(self) -> bool:
        return self.path.is_dir()

    def _cmd(self, *args: str) -> list[str]:
        return [self.config.binary, *args]

    def init(self) -> None:
        """Run terraform init.

        Raises:
            TerraformError: If init fails (backend unreadable or corrupted)
        """
        logger.info("Initializing Terraform in %s", self.path)
        result = self.runner.run(self._cmd("init", "-no-color", "-input=false"), cwd=self.path)
        if not result.ok:
            raise TerraformError(
                "Failed to initialize Terraform. The backend may be corrupted.",
                step="init",
                details={"last_lines": result.tail()},
            )

    def output(self, name: str) -> str | None:
        """Return a raw output value, or None when it is not available."""
        result = self.runner.run(
            self._cmd("output", "-no-color", "-raw", name), cwd=self.path, stream=False, merge_stderr=False
        )
        value = result.output.strip()
        if not result.ok or not value:
            return None
        return value

    def state_resources(self, refresh: bool = False) -> list[str]:
        """Addresses in the current state; empty when the state cannot be listed."""
        if self._state is None or refresh:
            result = self.runner.run(self._cmd("state", "list"), cwd=self.path, stream=False, merge_stderr=False)
            if not result.ok:
                logger.warning("No Terraform state found or state is empty")
                self._state = []
            else:
                self._state = [line.strip() for line in result.output.splitlines() if line.strip()]
        return self._state

    def has_module(self, module: str) -> bool:
        address = f"module.{module}"
        return any(r == address or r.startswith(address + ".") or r.startswith(address + "[")
                   for r in self.state_resources())

    def _var_file_args(self) -> list[str]:
        var_file = self.config.var_file
        if var_file and Path(var_file).is_file():
            return [f"-var-file={Path(var_file).resolve()}"]
        return []

    def destroy(self, module: str = ALL_REMAINING) -> ModuleDestroyResult:
        """Destroy one module, or everything remaining when ``module`` is ALL_REMAINING."""
        args = ["destroy", "-auto-approve", "-no-color", "-input=false", *self._var_file_args()]
        if module != ALL_REMAINING:
            args.append(f"-target=module.{module}")

        label = "all remaining resources" if module == ALL_REMAINING else f"module.{module}"
        logger.info("Destroying %s...", label)
        result = self.runner.run(self._cmd(*args), cwd=self.path)
        # State changed; force a fresh listing next time.
        self._state = None

        marker_found = self.config.success_marker in result.output
        if result.ok and not marker_found:
            logger.warning(
                "Terraform destroy of %s exited 0 but output lacks %r",
                label,
                self.config.success_marker,
            )
        return ModuleDestroyResult(
            module=module,
            succeeded=result.ok,
            marker_found=marker_found,
            raw_output=result.output,
            returncode=result.returncode,
        )
