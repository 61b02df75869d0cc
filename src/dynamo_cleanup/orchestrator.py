"""Ordered teardown of everything the installer created.

The orchestrator walks the static stage list once. Every step converts its
errors into outcomes and the run moves on; only a failed ``terraform init``
stops the run before anything destructive happens.
"""

from __future__ import annotations

import logging
import shutil
import signal
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from .clients import AwsClients
from .cluster import ClusterAccess, ClusterAppReconciler
from .config import RunConfig
from .exceptions import CommandError, TerraformError
from .helm import HelmClient
from .inventory import Discovery, ResourceInventory
from .models import (
    ALL_REMAINING,
    NETWORK_MODULES,
    PRE_NETWORK_MODULES,
    OperationOutcome,
    OperationStatus,
    ResourceDescriptor,
    ResourceKind,
    TeardownRun,
)
from .probe import ResourceProbe, describe_account
from .reconciler import ResourceReconciler
from .reporting import StateReporter
from .terraform import TerraformWorkspace

logger = logging.getLogger(__name__)

ClusterAccessFactory = Callable[[RunConfig, AwsClients], Any]


class TeardownOrchestrator:
    """Runs the teardown for one cluster.

    Collaborators can be injected; anything not given is built from the
    configuration once the cluster name and region are resolved.

    A first Ctrl-C lets the operation in flight finish and stops before the
    next one. A second Ctrl-C aborts the operation in flight, which is then
    reported as skipped.
    """

    def __init__(
        self,
        config: RunConfig,
        clients: AwsClients | None = None,
        workspace: TerraformWorkspace | None = None,
        helm: HelmClient | None = None,
        cluster_access_factory: ClusterAccessFactory = ClusterAccess,
        reporter: StateReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clients = clients
        self.workspace = workspace or TerraformWorkspace(config.terraform)
        self.helm = helm
        self.cluster_access_factory = cluster_access_factory
        self.reporter = reporter or StateReporter()
        self._sleep = sleep
        self._clock = clock
        self._workspace_ready = False
        self._stop_requested = False
        self._in_flight: ResourceDescriptor | None = None

    @property
    def clients(self) -> AwsClients:
        if self._clients is None:
            self._clients = AwsClients(self.config.aws_region)
        return self._clients

    def run(self, cluster_name: str | None = None, region: str | None = None) -> TeardownRun:
        """Execute every stage in order and return the finalized run.

        Explicit ``cluster_name``/``region`` win over Terraform outputs, which
        win over the configured defaults.
        """
        run = TeardownRun(cluster_name=self.config.cluster_name, region=self.config.aws_region)
        with self._deferred_interrupts():
            try:
                try:
                    self._prepare_workspace(cluster_name, region)
                except TerraformError as e:
                    logger.error("%s", e)
                    run.finalize(self.reporter.outcomes, aborted=True, reason=e.message)
                    return run

                run.cluster_name = self.config.cluster_name
                run.region = self.config.aws_region
                logger.info("Tearing down cluster %s in %s", run.cluster_name, run.region)
                if self.config.dry_run:
                    logger.warning("Dry run: nothing will be deleted")

                run.account_id = describe_account(self.clients)

                reconciler = ResourceReconciler(
                    self.config, self.clients, ResourceProbe(self.clients), self._sleep, self._clock
                )
                inventory = ResourceInventory(self.config, self.clients)

                self._check_stop()
                run.cluster_reachable = self._drain_cluster()
                self._reconcile(reconciler, inventory.pre_terraform())
                self._destroy_modules(PRE_NETWORK_MODULES)
                self._check_stop()
                self._reconcile(reconciler, inventory.controller_networking(run.account_id))
                self._settle_before_network()
                self._destroy_modules(NETWORK_MODULES + (ALL_REMAINING,))
                self._remove_local_artifacts()
            except KeyboardInterrupt:
                logger.warning("Interrupted; no further operations will be started")
                self._record_interrupted()
                run.interrupted = True
                run.finalize(self.reporter.outcomes, aborted=True, reason="interrupted by operator")
                return run

        run.finalize(self.reporter.outcomes)
        logger.info("Teardown finished: %s", run.disposition.value if run.disposition else "unknown")
        return run

    # -- interrupts --------------------------------------------------------

    @contextmanager
    def _deferred_interrupts(self) -> Iterator[None]:
        # Signal handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def request_stop(signum: int, frame: Any) -> None:
            if self._stop_requested:
                raise KeyboardInterrupt
            self._stop_requested = True
            logger.warning("Interrupt received; finishing the current operation (Ctrl-C again to abort it)")

        previous = signal.signal(signal.SIGINT, request_stop)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def _check_stop(self) -> None:
        if self._stop_requested:
            raise KeyboardInterrupt

    def _record_interrupted(self) -> None:
        descriptor, self._in_flight = self._in_flight, None
        if descriptor is not None and not self.reporter.recorded(descriptor):
            self.reporter.record(OperationOutcome(descriptor, OperationStatus.SKIPPED, "interrupted"))

    def _record_step(self, descriptor: ResourceDescriptor, step: Callable[[], OperationOutcome]) -> None:
        self._check_stop()
        self._in_flight = descriptor
        self.reporter.record(step())
        self._in_flight = None

    # -- preconditions -----------------------------------------------------

    def _prepare_workspace(self, cluster_name: str | None, region: str | None) -> None:
        resolved = {"cluster_name": cluster_name, "aws_region": region}
        self._workspace_ready = self.workspace.exists()

        if not self._workspace_ready:
            logger.warning(
                "Terraform directory %s not found; Terraform destroy will be skipped",
                self.workspace.path,
            )
        else:
            self.workspace.init()
            if cluster_name is None:
                resolved["cluster_name"] = self.workspace.output("cluster_name")
            if region is None:
                resolved["aws_region"] = self.workspace.output("region")

        self.config = self.config.with_overrides(**resolved)

    # -- stages ------------------------------------------------------------

    def _drain_cluster(self) -> bool:
        access = self.cluster_access_factory(self.config, self.clients)
        try:
            apis = access.probe()
            if apis is None:
                logger.info("Cluster not accessible, skipping Kubernetes cleanup")
                return False

            drainer = ClusterAppReconciler(
                self.config,
                apis,
                helm=self.helm,
                sleep=self._sleep,
                clock=self._clock,
                should_stop=lambda: self._stop_requested,
            )
            self._record_all(drainer.drain())
            return True
        finally:
            access.close()

    def _reconcile(self, reconciler: ResourceReconciler, found: Discovery) -> None:
        self._record_all(found.failures)
        for descriptor in found.descriptors:
            self._record_step(descriptor, lambda d=descriptor: reconciler.delete(d))

    def _module_descriptor(self, module: str) -> ResourceDescriptor:
        return ResourceDescriptor(ResourceKind.TERRAFORM_MODULE, module, self.config.aws_region)

    def _destroy_modules(self, modules: Iterable[str]) -> None:
        for module in modules:
            self._record_step(self._module_descriptor(module), lambda m=module: self._destroy_module(m))

    def _destroy_module(self, module: str) -> OperationOutcome:
        descriptor = self._module_descriptor(module)
        if not self._workspace_ready:
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "terraform workspace not found")

        targeted = module != ALL_REMAINING
        if targeted and not self.workspace.has_module(module):
            logger.info("Module %s not found in state, skipping", module)
            return OperationOutcome(descriptor, OperationStatus.NOT_FOUND, "not in terraform state")
        if self.config.dry_run:
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        try:
            result = self.workspace.destroy(module)
        except CommandError as e:
            return OperationOutcome(descriptor, OperationStatus.FAILED, e.message)

        if not result.succeeded:
            tail = "\n".join(result.raw_output.splitlines()[-5:])
            return OperationOutcome(descriptor, OperationStatus.FAILED, f"exit code {result.returncode}: {tail}")
        if not result.marker_found:
            return OperationOutcome(descriptor, OperationStatus.DELETED, "success marker missing from output")
        return OperationOutcome(descriptor, OperationStatus.DELETED)

    def _settle_before_network(self) -> None:
        if not self._workspace_ready or self.config.dry_run:
            return
        self._check_stop()
        delay = self.config.timing.pre_vpc_settle
        if delay > 0:
            logger.info("Waiting %.0fs for load balancer resources to release before destroying the VPC", delay)
            self._sleep(delay)

    def _remove_local_artifacts(self) -> None:
        for path in self.config.local.artifact_paths():
            self._record_step(
                ResourceDescriptor(ResourceKind.LOCAL_PATH, str(path)), lambda p=path: self._remove_path(p)
            )

    def _remove_path(self, path: Path) -> OperationOutcome:
        descriptor = ResourceDescriptor(ResourceKind.LOCAL_PATH, str(path))
        if not path.exists() and not path.is_symlink():
            return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
        if self.config.dry_run:
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            return OperationOutcome(descriptor, OperationStatus.FAILED, str(e))
        return OperationOutcome(descriptor, OperationStatus.DELETED)

    def _record_all(self, outcomes: Iterable[OperationOutcome]) -> None:
        for outcome in outcomes:
            self.reporter.record(outcome)
