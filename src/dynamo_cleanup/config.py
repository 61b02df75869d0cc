"""Configuration management for Dynamo Cleanup.

Provides the immutable run configuration passed to every component,
with loaders for environment variables and YAML files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ConfigurationError
from .models import DESTROY_MODULE_ORDER

# KMS refuses shorter pending windows.
MIN_KMS_PENDING_WINDOW_DAYS = 7


class CustomResourceKind(BaseModel):
    """A custom resource type deleted across all namespaces."""

    model_config = ConfigDict(frozen=True)

    group: str = Field(..., description="API group")
    version: str = Field(..., description="API version")
    plural: str = Field(..., description="Plural resource name")

    @property
    def crd_name(self) -> str:
        return f"{self.plural}.{self.group}"


def _unique(values: list) -> list:
    """Drop repeated entries, keeping the first occurrence."""
    return list(dict.fromkeys(values))


def _default_custom_resources() -> list[CustomResourceKind]:
    return [
        CustomResourceKind(group="nvidia.com", version="v1alpha1", plural="dynamographdeployments"),
        CustomResourceKind(group="nvidia.com", version="v1alpha1", plural="dynamocomponentdeployments"),
        CustomResourceKind(group="nvidia.com", version="v1alpha1", plural="dynamocomponents"),
    ]


class NamingConfig(BaseModel):
    """Naming conventions used to derive resource identifiers."""

    model_config = ConfigDict(frozen=True)

    iam_role_prefixes: list[str] = Field(
        default_factory=lambda: [
            "{cluster}-eks-cw-agent-role",
            "{cluster}-cluster-",
            "{cluster}-ebs-csi-driver-",
            "core-node-group-eks-node-group-",
        ],
        description="IAM role name prefixes ({cluster} is substituted)",
    )
    iam_policy_prefixes: list[str] = Field(
        default_factory=lambda: ["{cluster}-cluster-", "{cluster}-ebs-csi-driver-"],
        description="Customer-managed IAM policy name prefixes",
    )
    kms_alias: str = Field("alias/eks/{cluster}", description="KMS alias of the cluster key")
    log_groups: list[str] = Field(
        default_factory=lambda: [
            "/aws/eks/{cluster}/cluster",
            "/aws/eks/{cluster}/addon",
            "/aws/eks/{cluster}/authenticator",
            "/aws/eks/{cluster}/api",
            "/aws/eks/{cluster}/audit",
            "/aws/eks/{cluster}/controllerManager",
            "/aws/eks/{cluster}/scheduler",
        ],
        description="CloudWatch log groups",
    )
    ecr_repositories: list[str] = Field(
        default_factory=lambda: ["dynamo-operator", "dynamo-api-store", "dynamo-pipelines", "dynamo-base"],
        description="ECR repositories force-deleted with their images",
    )
    efs_creation_token: str = Field("dynamo-on-eks", description="EFS creation token")
    cluster_tag_key: str = Field(
        "elbv2.k8s.aws/cluster",
        description="Tag written by the load balancer controller on resources it owns",
    )


class KubernetesConfig(BaseModel):
    """Cluster-side objects removed before cloud infrastructure."""

    model_config = ConfigDict(frozen=True)

    argocd_namespace: str = Field("argocd", description="Namespace holding ArgoCD Applications")
    argocd_applications: list[str] = Field(
        default_factory=lambda: ["dynamo-cloud-operator"], description="ArgoCD Applications to delete"
    )
    target_namespace: str = Field("dynamo-cloud", description="Namespace of the deployed platform")
    custom_resources: list[CustomResourceKind] = Field(
        default_factory=_default_custom_resources, description="Custom resource kinds to delete"
    )
    crds: list[str] | None = Field(
        None, description="CRDs to delete (defaults to the custom resource kinds)"
    )
    helm_release_filter: str = Field("dynamo", description="Substring matched against release names")
    application_timeout: float = Field(60.0, description="Seconds to wait for Applications")
    namespace_timeout: float = Field(120.0, description="Seconds to wait for the namespace")
    custom_resource_timeout: float = Field(60.0, description="Seconds to wait for custom resources")
    crd_timeout: float = Field(60.0, description="Seconds to wait for each CRD")
    helm_timeout: str = Field("300s", description="Helm uninstall timeout")
    request_timeout: float = Field(30.0, description="Per-request kube API timeout")

    @field_validator("argocd_applications", "crds")
    @classmethod
    def validate_unique_names(cls, v: list[str] | None) -> list[str] | None:
        """Each name produces one outcome, so repeats are dropped."""
        return None if v is None else _unique(v)

    @field_validator("custom_resources")
    @classmethod
    def validate_unique_kinds(cls, v: list[CustomResourceKind]) -> list[CustomResourceKind]:
        seen: dict[str, CustomResourceKind] = {}
        for kind in v:
            seen.setdefault(kind.crd_name, kind)
        return list(seen.values())

    @property
    def crd_names(self) -> list[str]:
        if self.crds is not None:
            return list(self.crds)
        return [cr.crd_name for cr in self.custom_resources]


class TerraformConfig(BaseModel):
    """Terraform workspace settings."""

    model_config = ConfigDict(frozen=True)

    binary: str = Field("terraform", description="Terraform executable")
    workspace_dir: Path = Field(Path("terraform/_LOCAL"), description="Terraform working directory")
    var_file: Path | None = Field(
        Path("terraform/blueprint.tfvars"), description="Optional tfvars passed to destroy"
    )
    modules: list[str] = Field(default_factory=lambda: list(DESTROY_MODULE_ORDER))
    success_marker: str = Field("Destroy complete", description="Text expected in destroy output")

    @field_validator("modules")
    @classmethod
    def validate_modules(cls, v: list[str]) -> list[str]:
        """Module order is fixed; only the exact default sequence is accepted."""
        if tuple(v) != DESTROY_MODULE_ORDER:
            raise ValueError(f"Terraform modules must be destroyed in order: {list(DESTROY_MODULE_ORDER)}")
        return v


class TimingConfig(BaseModel):
    """Bounded waits used between dependent deletions."""

    model_config = ConfigDict(frozen=True)

    efs_mount_target_grace: float = Field(30.0, description="Max seconds to wait for mount targets")
    poll_interval: float = Field(5.0, description="Seconds between state polls")
    pre_vpc_settle: float = Field(30.0, description="Seconds to wait before destroying the VPC")
    kms_pending_window_days: int = Field(MIN_KMS_PENDING_WINDOW_DAYS, description="KMS deletion window")

    @field_validator("kms_pending_window_days")
    @classmethod
    def validate_kms_window(cls, v: int) -> int:
        if v < MIN_KMS_PENDING_WINDOW_DAYS or v > 30:
            raise ValueError(f"KMS pending window must be between {MIN_KMS_PENDING_WINDOW_DAYS} and 30 days")
        return v


class LocalConfig(BaseModel):
    """Local artifacts removed at the end of the run."""

    model_config = ConfigDict(frozen=True)

    base_dir: Path = Field(Path("."), description="Directory the artifact paths are relative to")
    artifacts: list[str] = Field(
        default_factory=lambda: ["terraform/_LOCAL", "dynamo_venv", "dynamo", "helpers"],
    )

    @field_validator("artifacts")
    @classmethod
    def validate_unique_artifacts(cls, v: list[str]) -> list[str]:
        return _unique(v)

    def artifact_paths(self) -> list[Path]:
        return [self.base_dir / a for a in self.artifacts]


class RunConfig(BaseModel):
    """Immutable configuration of one teardown run."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str = Field("dynamo-on-eks", description="EKS cluster name")
    aws_region: str = Field("us-west-2", description="AWS region")
    dry_run: bool = Field(False, description="Probe and report without deleting")
    log_level: str = Field("INFO", description="Logging level")

    naming: NamingConfig = Field(default_factory=NamingConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    terraform: TerraformConfig = Field(default_factory=TerraformConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    local: LocalConfig = Field(default_factory=LocalConfig)

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Cluster name must not be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level values."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"Log level must be one of: {allowed_levels}")
        return v.upper()

    def render(self, template: str) -> str:
        """Substitute the cluster name into a naming-convention template."""
        return template.replace("{cluster}", self.cluster_name)

    @property
    def kms_alias(self) -> str:
        return self.render(self.naming.kms_alias)

    @property
    def log_groups(self) -> list[str]:
        return [self.render(t) for t in self.naming.log_groups]

    @property
    def iam_role_prefixes(self) -> list[str]:
        return [self.render(t) for t in self.naming.iam_role_prefixes]

    @property
    def iam_policy_prefixes(self) -> list[str]:
        return [self.render(t) for t in self.naming.iam_policy_prefixes]

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with top-level fields replaced (None values are ignored)."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if not values:
            return self
        data = self.model_dump()
        data.update(values)
        return RunConfig(**data)

    @classmethod
    def from_env(cls) -> "RunConfig":
        """Load configuration from environment variables."""
        config_data: dict[str, Any] = {
            "cluster_name": os.environ.get("CLUSTER_NAME", "dynamo-on-eks"),
            "aws_region": os.environ.get("AWS_REGION", "us-west-2"),
            "dry_run": os.environ.get("DRY_RUN", "false").lower() in ("1", "true", "yes"),
            "log_level": os.environ.get("LOG_LEVEL", "INFO"),
        }
        terraform_dir = os.environ.get("TERRAFORM_DIR")
        if terraform_dir:
            config_data["terraform"] = {"workspace_dir": terraform_dir}

        return cls(**config_data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RunConfig":
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file

        Returns:
            RunConfig instance loaded from the file

        Raises:
            ConfigurationError: If the file does not hold a mapping
        """
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {config_path} must contain a mapping", config_key=str(config_path)
            )

        # Backfill cluster and region from the environment if missing
        data.setdefault("cluster_name", os.environ.get("CLUSTER_NAME", "dynamo-on-eks"))
        data.setdefault("aws_region", os.environ.get("AWS_REGION", "us-west-2"))

        return cls(**data)


def load_config(config_path: Path | None = None, **overrides: Any) -> RunConfig:
    """Load the run configuration.

    Args:
        config_path: Optional YAML config file; environment variables are used otherwise
        **overrides: Top-level fields that take precedence (None values are ignored)

    Returns:
        Loaded configuration object

    Raises:
        FileNotFoundError: If config file is not found
        ValueError: If configuration is invalid
        ConfigurationError: If the file does not hold a mapping
    """
    if config_path is not None:
        config = RunConfig.from_yaml(config_path)
    else:
        config = RunConfig.from_env()

    return config.with_overrides(**overrides)


def get_default_config(cluster_name: str, region: str = "us-west-2") -> dict[str, Any]:
    """Get a default configuration dictionary for a cluster.

    Args:
        cluster_name: Target cluster
        region: AWS region

    Returns:
        Default configuration dictionary
    """
    return RunConfig(cluster_name=cluster_name, aws_region=region).model_dump(mode="json")
