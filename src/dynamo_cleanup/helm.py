"""Helm release listing and uninstall through the helm CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .exceptions import CommandError
from .shell import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HelmRelease:
    name: str
    namespace: str

    @property
    def identifier(self) -> str:
        return f"{self.namespace}/{self.name}"


def matches_release(release: HelmRelease, name_filter: str, namespace: str) -> bool:
    """Loose match: name contains the filter, or the release lives in the target namespace."""
    return (bool(name_filter) and name_filter in release.name) or release.namespace == namespace


class HelmClient:
    """Thin wrapper over the helm CLI.

    Every command carries ``--kubeconfig`` when one is set, so releases are
    listed and removed on that cluster and never on the current context.
    """

    def __init__(self, runner: CommandRunner | None = None, binary: str = "helm", kubeconfig: str | None = None):
        self.runner = runner or CommandRunner()
        self.binary = binary
        self.kubeconfig = kubeconfig

    def for_kubeconfig(self, kubeconfig: str) -> "HelmClient":
        """A client bound to ``kubeconfig``, sharing this client's runner."""
        return HelmClient(runner=self.runner, binary=self.binary, kubeconfig=kubeconfig)

    def available(self) -> bool:
        return self.runner.available(self.binary)

    def _command(self, *args: str) -> list[str]:
        command = [self.binary, *args]
        if self.kubeconfig:
            command += ["--kubeconfig", self.kubeconfig]
        return command

    def list_releases(self) -> list[HelmRelease]:
        """All releases across namespaces.

        Raises:
            CommandError: If helm fails or returns unparseable output
        """
        command = self._command("list", "--all-namespaces", "-o", "json")
        result = self.runner.run(command, stream=False, merge_stderr=False)
        if not result.ok:
            raise CommandError(f"helm list failed: {result.tail(5)}", command=command)
        if result.stderr:
            logger.debug("helm list stderr: %s", result.stderr)
        try:
            data = json.loads(result.output or "[]")
        except json.JSONDecodeError as e:
            raise CommandError(f"Unexpected helm list output: {e}", command=command) from e
        return [HelmRelease(name=r["name"], namespace=r["namespace"]) for r in data or []]

    def uninstall(self, release: HelmRelease, timeout: str = "300s") -> CommandResult:
        return self.runner.run(
            self._command("uninstall", release.name, "-n", release.namespace, f"--timeout={timeout}")
        )
