"""Data model for the teardown run.

Descriptors identify one deletable unit, outcomes record what happened
to it, and the static orders below define the teardown sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ResourceKind(str, Enum):
    """Kinds of resources the teardown knows how to remove."""

    CLUSTER = "Cluster"
    KMS_ALIAS = "KmsAlias"
    LOG_GROUP = "LogGroup"
    IAM_ROLE = "IamRole"
    IAM_POLICY = "IamPolicy"
    ECR_REPO = "EcrRepo"
    EFS_FILESYSTEM = "EfsFilesystem"
    LOAD_BALANCER = "LoadBalancer"
    TARGET_GROUP = "TargetGroup"
    SECURITY_GROUP = "SecurityGroup"
    HELM_RELEASE = "HelmRelease"
    ARGO_APPLICATION = "ArgoApplication"
    K8S_NAMESPACE = "K8sNamespace"
    CUSTOM_RESOURCE = "CustomResource"
    CUSTOM_RESOURCE_DEFINITION = "CustomResourceDefinition"
    TERRAFORM_MODULE = "TerraformModule"
    LOCAL_PATH = "LocalPath"


class OperationStatus(str, Enum):
    DELETED = "Deleted"
    NOT_FOUND = "NotFound"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class RunDisposition(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ABORTED = "aborted"


class NamespaceState(str, Enum):
    """Lifecycle of the target namespace while it is drained."""

    PRESENT = "Present"
    DRAINING = "Draining"
    STUCK_FINALIZER = "StuckFinalizer"
    FORCE_CLEARED = "ForceCleared"
    ABSENT = "Absent"


# Allowed namespace transitions; there is no way back to PRESENT.
NAMESPACE_TRANSITIONS: dict[NamespaceState, tuple[NamespaceState, ...]] = {
    NamespaceState.PRESENT: (NamespaceState.DRAINING, NamespaceState.ABSENT),
    NamespaceState.DRAINING: (NamespaceState.ABSENT, NamespaceState.STUCK_FINALIZER),
    NamespaceState.STUCK_FINALIZER: (NamespaceState.FORCE_CLEARED,),
    NamespaceState.FORCE_CLEARED: (NamespaceState.ABSENT,),
    NamespaceState.ABSENT: (),
}


# Terraform modules, destroyed strictly in this order.
DESTROY_MODULE_ORDER: tuple[str, ...] = ("data_addons", "eks_blueprints_addons", "eks", "vpc")

# Modules destroyed before the tagged load balancer / security group sweep.
PRE_NETWORK_MODULES: tuple[str, ...] = DESTROY_MODULE_ORDER[:-1]
NETWORK_MODULES: tuple[str, ...] = DESTROY_MODULE_ORDER[-1:]

# Identifier used for the final unconditional destroy of remaining resources.
ALL_REMAINING = "*"


@dataclass(frozen=True)
class TeardownStage:
    """One step of the static teardown order."""

    name: str
    kinds: tuple[ResourceKind, ...]
    requires_cluster: bool = False
    modules: tuple[str, ...] = ()


TEARDOWN_ORDER: tuple[TeardownStage, ...] = (
    TeardownStage("argocd-applications", (ResourceKind.ARGO_APPLICATION,), requires_cluster=True),
    TeardownStage("namespace", (ResourceKind.K8S_NAMESPACE,), requires_cluster=True),
    TeardownStage("custom-resources", (ResourceKind.CUSTOM_RESOURCE,), requires_cluster=True),
    TeardownStage("helm-releases", (ResourceKind.HELM_RELEASE,), requires_cluster=True),
    TeardownStage("crds", (ResourceKind.CUSTOM_RESOURCE_DEFINITION,), requires_cluster=True),
    TeardownStage(
        "pre-terraform-conflicts",
        (
            ResourceKind.KMS_ALIAS,
            ResourceKind.LOG_GROUP,
            ResourceKind.IAM_ROLE,
            ResourceKind.IAM_POLICY,
            ResourceKind.ECR_REPO,
            ResourceKind.EFS_FILESYSTEM,
        ),
    ),
    TeardownStage("terraform-compute", (ResourceKind.TERRAFORM_MODULE,), modules=PRE_NETWORK_MODULES),
    TeardownStage(
        "controller-networking",
        (ResourceKind.LOAD_BALANCER, ResourceKind.TARGET_GROUP, ResourceKind.SECURITY_GROUP),
    ),
    TeardownStage(
        "terraform-network",
        (ResourceKind.TERRAFORM_MODULE,),
        modules=NETWORK_MODULES + (ALL_REMAINING,),
    ),
    TeardownStage("local-artifacts", (ResourceKind.LOCAL_PATH,)),
)


@dataclass(frozen=True)
class DependencyEdge:
    before: ResourceKind
    after: ResourceKind


def dependency_edges() -> list[DependencyEdge]:
    """Flatten TEARDOWN_ORDER into consecutive (before, after) kind pairs."""
    flat: list[ResourceKind] = []
    for stage in TEARDOWN_ORDER:
        flat.extend(stage.kinds)
    return [DependencyEdge(a, b) for a, b in zip(flat, flat[1:]) if a != b]


@dataclass(frozen=True)
class ResourceDescriptor:
    """Identifies one deletable unit."""

    kind: ResourceKind
    identifier: str
    region: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


@dataclass(frozen=True)
class OperationOutcome:
    """Result of driving one resource toward absent."""

    resource: ResourceDescriptor
    status: OperationStatus
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status == OperationStatus.FAILED

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.resource.kind.value,
            "identifier": self.resource.identifier,
            "region": self.resource.region,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ModuleDestroyResult:
    """Structured result of a module-targeted Terraform destroy."""

    module: str
    succeeded: bool
    marker_found: bool
    raw_output: str
    returncode: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TeardownRun:
    """Aggregate state of one orchestrator invocation."""

    cluster_name: str
    region: str
    account_id: str = "unknown"
    cluster_reachable: bool = False
    outcomes: list[OperationOutcome] = field(default_factory=list)
    disposition: RunDisposition | None = None
    interrupted: bool = False
    abort_reason: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def finalized(self) -> bool:
        return self.disposition is not None

    def finalize(self, outcomes: list[OperationOutcome], aborted: bool = False, reason: str | None = None) -> None:
        if self.finalized:
            raise RuntimeError("Teardown run already finalized")
        self.outcomes = list(outcomes)
        self.finished_at = _utcnow()
        if aborted:
            self.disposition = RunDisposition.ABORTED
            self.abort_reason = reason
        elif any(o.failed for o in self.outcomes):
            self.disposition = RunDisposition.PARTIAL
        else:
            self.disposition = RunDisposition.SUCCESS

    @property
    def exit_code(self) -> int:
        """0 for best-effort completion, 1 when a precondition aborted the run."""
        if self.interrupted:
            return 130
        return 1 if self.disposition == RunDisposition.ABORTED else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_name": self.cluster_name,
            "region": self.region,
            "account_id": self.account_id,
            "cluster_reachable": self.cluster_reachable,
            "disposition": self.disposition.value if self.disposition else None,
            "interrupted": self.interrupted,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
