"""Cluster reachability and application-level drain.

ClusterAccess builds an authenticated Kubernetes client straight from the
EKS endpoint and writes a kubeconfig dedicated to that cluster for the helm
CLI. ClusterAppReconciler removes GitOps applications, the platform
namespace, custom resources, Helm releases and CRDs, in that order, before
any cloud infrastructure is touched.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable

import urllib3
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from botocore.signers import RequestSigner
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from .clients import AwsClients
from .config import CustomResourceKind, RunConfig
from .exceptions import ClusterAccessError, CommandError
from .helm import HelmClient, matches_release
from .models import (
    NAMESPACE_TRANSITIONS,
    NamespaceState,
    OperationOutcome,
    OperationStatus,
    ResourceDescriptor,
    ResourceKind,
)
from .polling import wait_until

logger = logging.getLogger(__name__)

STS_TOKEN_EXPIRES_IN = 60
# EKS rejects tokens older than 15 minutes.
TOKEN_REFRESH_SECONDS = 600

ARGO_GROUP = "argoproj.io"
ARGO_VERSION = "v1alpha1"
ARGO_PLURAL = "applications"

# Errors a kube API call can raise: API responses and transport failures.
KUBE_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)


@dataclass
class KubeApis:
    """The three API groups the drain needs, plus the kubeconfig for helm."""

    core: Any
    custom: Any
    extensions: Any
    kubeconfig: str | None = None


class ClusterAccess:
    """Decides once whether the cluster API server is usable."""

    def __init__(self, config: RunConfig, clients: AwsClients, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clients = clients
        self._clock = clock
        self._temp_files: list[str] = []
        self._token_issued_at = 0.0

    def connect(self) -> KubeApis:
        """Describe the cluster, authenticate and issue a lightweight list call.

        Raises:
            ClusterAccessError: If any of the three steps fails
        """
        name = self.config.cluster_name
        try:
            info = self.clients["eks"].describe_cluster(name=name)["cluster"]
            endpoint = info["endpoint"]
            certificate = info["certificateAuthority"]["data"]
        except (ClientError, BotoCoreError, KeyError) as e:
            raise ClusterAccessError(f"Cluster {name} does not exist or is not accessible: {e}", cluster_name=name) from e

        try:
            api_client = self._api_client(endpoint, certificate)
            apis = KubeApis(
                core=client.CoreV1Api(api_client),
                custom=client.CustomObjectsApi(api_client),
                extensions=client.ApiextensionsV1Api(api_client),
            )
            apis.core.list_node(limit=1, _request_timeout=self.config.kubernetes.request_timeout)
            apis.kubeconfig = self.write_kubeconfig(endpoint, certificate)
        except (*KUBE_ERRORS, ValueError) as e:
            raise ClusterAccessError(f"Cluster {name} exists but the API server cannot be reached: {e}", cluster_name=name) from e

        return apis

    def probe(self) -> KubeApis | None:
        """Return API handles when the cluster is reachable, otherwise None."""
        try:
            apis = self.connect()
        except ClusterAccessError as e:
            logger.info("%s", e.message)
            return None
        logger.info("Cluster %s is accessible", self.config.cluster_name)
        return apis

    def close(self) -> None:
        for path in self._temp_files:
            if os.path.exists(path):
                os.unlink(path)
        self._temp_files = []

    def _temp_file(self, suffix: str, data: bytes) -> str:
        fd, path = tempfile.mkstemp(prefix=f"{self.config.cluster_name}-", suffix=suffix)
        self._temp_files.append(path)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return path

    def write_kubeconfig(self, endpoint: str, certificate: str) -> str:
        """Write a kubeconfig for this cluster only and return its path.

        Same shape as ``aws eks update-kubeconfig`` output: the user entry
        runs ``aws eks get-token`` so helm always sends a fresh token.
        """
        name = self.config.cluster_name
        region = self.config.aws_region
        exec_config: dict[str, Any] = {
            "apiVersion": "client.authentication.k8s.io/v1beta1",
            "command": "aws",
            "args": ["--region", region, "eks", "get-token", "--cluster-name", name, "--output", "json"],
            "interactiveMode": "Never",
        }
        profile = self.clients.session.profile_name
        if profile and profile != "default":
            exec_config["env"] = [{"name": "AWS_PROFILE", "value": profile}]

        kubeconfig = {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{"name": name, "cluster": {"server": endpoint, "certificate-authority-data": certificate}}],
            "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
            "current-context": name,
            "users": [{"name": name, "user": {"exec": exec_config}}],
        }
        path = self._temp_file(".kubeconfig", yaml.safe_dump(kubeconfig, sort_keys=False).encode("utf-8"))
        logger.debug("Wrote kubeconfig for %s to %s", name, path)
        return path

    def _api_client(self, endpoint: str, certificate: str) -> client.ApiClient:
        configuration = client.Configuration(host=endpoint)
        configuration.ssl_ca_cert = self._temp_file(".crt", base64.b64decode(certificate))
        configuration.api_key_prefix["authorization"] = "Bearer"
        self._issue_token(configuration)
        configuration.refresh_api_key_hook = self._refresh_token
        return client.ApiClient(configuration)

    def _issue_token(self, configuration: client.Configuration) -> None:
        configuration.api_key["authorization"] = self.bearer_token()
        self._token_issued_at = self._clock()

    def _refresh_token(self, configuration: client.Configuration) -> None:
        if self._clock() - self._token_issued_at >= TOKEN_REFRESH_SECONDS:
            logger.debug("Refreshing EKS token for %s", self.config.cluster_name)
            self._issue_token(configuration)

    def bearer_token(self) -> str:
        """EKS token: a presigned STS GetCallerIdentity URL bound to the cluster name."""
        session = self.clients.session
        region = self.config.aws_region
        sts = self.clients["sts"]
        signer = RequestSigner(
            sts.meta.service_model.service_id,
            region,
            "sts",
            "v4",
            session.get_credentials(),
            session.events,
        )
        params = {
            "method": "GET",
            "url": f"https://sts.{region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
            "body": {},
            "headers": {"x-k8s-aws-id": self.config.cluster_name},
            "context": {},
        }
        signed_url = signer.generate_presigned_url(
            params, region_name=region, expires_in=STS_TOKEN_EXPIRES_IN, operation_name=""
        )
        base64_url = base64.urlsafe_b64encode(signed_url.encode("utf-8")).decode("utf-8")

        # remove any base64 encoding padding:
        return "k8s-aws-v1." + re.sub(r"=*", "", base64_url)


def _is_404(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def _api_message(error: Exception) -> str:
    if isinstance(error, ApiException):
        return f"{error.status} {error.reason}".strip()
    return f"{type(error).__name__}: {error}"


class ClusterAppReconciler:
    """Removes cluster-side objects of the platform, each step best-effort."""

    def __init__(
        self,
        config: RunConfig,
        apis: KubeApis,
        helm: HelmClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        should_stop: Callable[[], bool] = lambda: False,
    ):
        self.config = config
        self.k8s = config.kubernetes
        self.apis = apis
        helm = helm or HelmClient()
        self.helm = helm.for_kubeconfig(apis.kubeconfig) if apis.kubeconfig else helm
        self._sleep = sleep
        self._clock = clock
        self._should_stop = should_stop
        self._timeout = self.k8s.request_timeout
        self.namespace_states: list[NamespaceState] = []

    def _descriptor(self, kind: ResourceKind, identifier: str) -> ResourceDescriptor:
        return ResourceDescriptor(kind=kind, identifier=identifier, region=self.config.aws_region)

    def drain(self, namespace: str | None = None, app_names: list[str] | None = None) -> list[OperationOutcome]:
        namespace = namespace or self.k8s.target_namespace
        app_names = self.k8s.argocd_applications if app_names is None else app_names

        steps: list[Callable[[], list[OperationOutcome]]] = [
            lambda: self.delete_applications(app_names),
            lambda: [self.delete_namespace(namespace)],
            lambda: self.delete_custom_resources(self.k8s.custom_resources),
            lambda: self.uninstall_helm_releases(namespace),
            lambda: self.delete_crds(self.k8s.crd_names),
        ]
        outcomes: list[OperationOutcome] = []
        for step in steps:
            if self._should_stop():
                logger.warning("Stop requested; skipping the remaining cluster cleanup")
                break
            outcomes.extend(step())
        return outcomes

    # -- generic helpers ---------------------------------------------------

    def _absent(self, read: Callable[[], Any]) -> bool:
        try:
            read()
        except KUBE_ERRORS as e:
            if _is_404(e):
                return True
            logger.debug("Read failed while waiting for deletion: %s", _api_message(e))
        return False

    def _wait_absent(self, read: Callable[[], Any], timeout: float) -> bool:
        return wait_until(
            lambda: self._absent(read),
            timeout=timeout,
            interval=self.config.timing.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _delete_and_wait(
        self,
        descriptor: ResourceDescriptor,
        delete: Callable[[], Any],
        read: Callable[[], Any],
        timeout: float,
    ) -> OperationOutcome:
        if self.config.dry_run:
            if self._absent(read):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        try:
            delete()
        except KUBE_ERRORS as e:
            if _is_404(e):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
            return OperationOutcome(descriptor, OperationStatus.FAILED, _api_message(e))

        if self._wait_absent(read, timeout):
            return OperationOutcome(descriptor, OperationStatus.DELETED)
        return OperationOutcome(descriptor, OperationStatus.FAILED, f"timed out after {timeout:.0f}s")

    # -- 1. GitOps applications --------------------------------------------

    def delete_applications(self, app_names: list[str]) -> list[OperationOutcome]:
        custom = self.apis.custom
        ns = self.k8s.argocd_namespace
        outcomes = []
        for app in app_names:
            logger.info("Removing ArgoCD application %s", app)
            outcomes.append(
                self._delete_and_wait(
                    self._descriptor(ResourceKind.ARGO_APPLICATION, f"{ns}/{app}"),
                    lambda app=app: custom.delete_namespaced_custom_object(
                        ARGO_GROUP, ARGO_VERSION, ns, ARGO_PLURAL, app, _request_timeout=self._timeout
                    ),
                    lambda app=app: custom.get_namespaced_custom_object(
                        ARGO_GROUP, ARGO_VERSION, ns, ARGO_PLURAL, app, _request_timeout=self._timeout
                    ),
                    self.k8s.application_timeout,
                )
            )
        return outcomes

    # -- 2. namespace ------------------------------------------------------

    def _transition(self, state: NamespaceState) -> None:
        if self.namespace_states:
            current = self.namespace_states[-1]
            if state not in NAMESPACE_TRANSITIONS[current]:
                raise RuntimeError(f"Illegal namespace transition {current.value} -> {state.value}")
        self.namespace_states.append(state)

    def delete_namespace(self, namespace: str) -> OperationOutcome:
        core = self.apis.core
        descriptor = self._descriptor(ResourceKind.K8S_NAMESPACE, namespace)
        self.namespace_states = []

        def read() -> Any:
            return core.read_namespace(namespace, _request_timeout=self._timeout)

        if self._absent(read):
            return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
        self._transition(NamespaceState.PRESENT)

        if self.config.dry_run:
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        logger.info("Removing namespace %s", namespace)
        try:
            core.delete_namespace(namespace, _request_timeout=self._timeout)
        except KUBE_ERRORS as e:
            if _is_404(e):
                self._transition(NamespaceState.ABSENT)
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
            return OperationOutcome(descriptor, OperationStatus.FAILED, _api_message(e))
        self._transition(NamespaceState.DRAINING)

        if self._wait_absent(read, self.k8s.namespace_timeout):
            self._transition(NamespaceState.ABSENT)
            return OperationOutcome(descriptor, OperationStatus.DELETED)

        self._transition(NamespaceState.STUCK_FINALIZER)
        logger.warning("Namespace %s stuck terminating; clearing finalizers", namespace)
        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": namespace},
            "spec": {"finalizers": []},
        }
        try:
            core.replace_namespace_finalize(namespace, body, _request_timeout=self._timeout)
        except KUBE_ERRORS as e:
            if not _is_404(e):
                return OperationOutcome(
                    descriptor, OperationStatus.FAILED, f"finalizer clear failed: {_api_message(e)}"
                )
        self._transition(NamespaceState.FORCE_CLEARED)

        if self._wait_absent(read, self.k8s.namespace_timeout):
            self._transition(NamespaceState.ABSENT)
            return OperationOutcome(descriptor, OperationStatus.DELETED, "finalizers force-cleared")
        return OperationOutcome(
            descriptor,
            OperationStatus.FAILED,
            f"timed out after {self.k8s.namespace_timeout:.0f}s even with finalizers cleared",
        )

    # -- 3. custom resources -----------------------------------------------

    def delete_custom_resources(self, kinds: list[CustomResourceKind]) -> list[OperationOutcome]:
        custom = self.apis.custom
        timeout = self._timeout
        outcomes: list[OperationOutcome] = []
        for kind in kinds:
            try:
                listing = custom.list_cluster_custom_object(
                    kind.group, kind.version, kind.plural, _request_timeout=timeout
                )
            except KUBE_ERRORS as e:
                descriptor = self._descriptor(ResourceKind.CUSTOM_RESOURCE, kind.crd_name)
                if _is_404(e):
                    outcomes.append(OperationOutcome(descriptor, OperationStatus.NOT_FOUND, "kind not installed"))
                else:
                    outcomes.append(OperationOutcome(descriptor, OperationStatus.FAILED, _api_message(e)))
                continue

            items = listing.get("items", []) if isinstance(listing, dict) else []
            if not items:
                outcomes.append(
                    OperationOutcome(
                        self._descriptor(ResourceKind.CUSTOM_RESOURCE, kind.crd_name), OperationStatus.NOT_FOUND
                    )
                )
                continue

            for item in items:
                metadata = item.get("metadata", {})
                name = metadata.get("name", "")
                ns = metadata.get("namespace")
                identifier = f"{kind.crd_name}/{ns}/{name}" if ns else f"{kind.crd_name}/{name}"
                logger.info("Removing custom resource %s", identifier)
                if ns:
                    delete = lambda k=kind, ns=ns, name=name: custom.delete_namespaced_custom_object(  # noqa: E731
                        k.group, k.version, ns, k.plural, name, _request_timeout=timeout
                    )
                    read = lambda k=kind, ns=ns, name=name: custom.get_namespaced_custom_object(  # noqa: E731
                        k.group, k.version, ns, k.plural, name, _request_timeout=timeout
                    )
                else:
                    delete = lambda k=kind, name=name: custom.delete_cluster_custom_object(  # noqa: E731
                        k.group, k.version, k.plural, name, _request_timeout=timeout
                    )
                    read = lambda k=kind, name=name: custom.get_cluster_custom_object(  # noqa: E731
                        k.group, k.version, k.plural, name, _request_timeout=timeout
                    )
                outcomes.append(
                    self._delete_and_wait(
                        self._descriptor(ResourceKind.CUSTOM_RESOURCE, identifier),
                        delete,
                        read,
                        self.k8s.custom_resource_timeout,
                    )
                )
        return outcomes

    # -- 4. helm releases --------------------------------------------------

    def uninstall_helm_releases(self, namespace: str) -> list[OperationOutcome]:
        everything = self._descriptor(ResourceKind.HELM_RELEASE, "*")
        if not self.helm.available():
            logger.warning("Helm not found, skipping Helm cleanup")
            return [OperationOutcome(everything, OperationStatus.SKIPPED, "helm not installed")]
        if not self.helm.kubeconfig:
            logger.warning("No kubeconfig for cluster %s, skipping Helm cleanup", self.config.cluster_name)
            return [OperationOutcome(everything, OperationStatus.SKIPPED, "no kubeconfig for the cluster")]

        try:
            releases = self.helm.list_releases()
        except CommandError as e:
            return [OperationOutcome(everything, OperationStatus.FAILED, e.message)]

        matching = [r for r in releases if matches_release(r, self.k8s.helm_release_filter, namespace)]
        if not matching:
            logger.info("No Helm releases matching %r or namespace %s", self.k8s.helm_release_filter, namespace)

        outcomes = []
        for release in matching:
            descriptor = self._descriptor(ResourceKind.HELM_RELEASE, release.identifier)
            if self.config.dry_run:
                outcomes.append(OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run"))
                continue
            logger.info("Removing Helm release %s in namespace %s", release.name, release.namespace)
            try:
                result = self.helm.uninstall(release, timeout=self.k8s.helm_timeout)
            except CommandError as e:
                outcomes.append(OperationOutcome(descriptor, OperationStatus.FAILED, e.message))
                continue
            if result.ok:
                outcomes.append(OperationOutcome(descriptor, OperationStatus.DELETED))
            elif "not found" in result.output.lower():
                outcomes.append(OperationOutcome(descriptor, OperationStatus.NOT_FOUND, result.tail(1)))
            else:
                outcomes.append(OperationOutcome(descriptor, OperationStatus.FAILED, result.tail(5)))
        return outcomes

    # -- 5/6. CRDs ---------------------------------------------------------

    def delete_crds(self, crd_names: list[str]) -> list[OperationOutcome]:
        return [self.delete_crd(name) for name in crd_names]

    def delete_crd(self, name: str) -> OperationOutcome:
        ext = self.apis.extensions
        descriptor = self._descriptor(ResourceKind.CUSTOM_RESOURCE_DEFINITION, name)
        timeout = self.k8s.crd_timeout

        def read() -> Any:
            return ext.read_custom_resource_definition(name, _request_timeout=self._timeout)

        if self.config.dry_run:
            if self._absent(read):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        logger.info("Removing CRD %s", name)
        try:
            ext.delete_custom_resource_definition(name, _request_timeout=self._timeout)
        except KUBE_ERRORS as e:
            if _is_404(e):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
            return OperationOutcome(descriptor, OperationStatus.FAILED, _api_message(e))

        if self._wait_absent(read, timeout):
            return OperationOutcome(descriptor, OperationStatus.DELETED)

        # Stuck on a finalizer: clear it once, retry the delete once.
        logger.warning("CRD %s still present after %.0fs; clearing finalizers", name, timeout)
        try:
            ext.patch_custom_resource_definition(
                name, {"metadata": {"finalizers": []}}, _request_timeout=self._timeout
            )
            ext.delete_custom_resource_definition(name, _request_timeout=self._timeout)
        except KUBE_ERRORS as e:
            if _is_404(e):
                return OperationOutcome(descriptor, OperationStatus.DELETED, "finalizers force-cleared")
            return OperationOutcome(descriptor, OperationStatus.FAILED, f"force clear failed: {_api_message(e)}")

        if self._wait_absent(read, timeout):
            return OperationOutcome(descriptor, OperationStatus.DELETED, "finalizers force-cleared")
        return OperationOutcome(descriptor, OperationStatus.FAILED, f"timed out after {timeout:.0f}s even with finalizers cleared")
