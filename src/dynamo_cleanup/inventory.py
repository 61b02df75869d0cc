"""Discovery of resource descriptors from naming conventions and tags.

Identifiers are never persisted by the installer outside Terraform state,
so everything is resolved again here: by name prefix for IAM, by fixed
name for logs/KMS/ECR/EFS, and by the controller's cluster tag for load
balancers, target groups and security groups.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from botocore.exceptions import BotoCoreError, ClientError

from .clients import AwsClients, paginate
from .config import RunConfig
from .models import OperationOutcome, OperationStatus, ResourceDescriptor, ResourceKind
from .probe import error_message

logger = logging.getLogger(__name__)

LOAD_BALANCER_RESOURCE_TYPE = "elasticloadbalancing:loadbalancer"
TARGET_GROUP_RESOURCE_TYPE = "elasticloadbalancing:targetgroup"


@dataclass
class Discovery:
    """Descriptors found plus outcomes for lookups that could not run."""

    descriptors: list[ResourceDescriptor] = field(default_factory=list)
    failures: list[OperationOutcome] = field(default_factory=list)

    def add(self, descriptor: ResourceDescriptor) -> None:
        if descriptor not in self.descriptors:
            self.descriptors.append(descriptor)

    def extend(self, other: "Discovery") -> None:
        for d in other.descriptors:
            self.add(d)
        self.failures.extend(other.failures)


class ResourceInventory:
    """Resolves the descriptors the teardown has to process."""

    def __init__(self, config: RunConfig, clients: AwsClients):
        self.config = config
        self.clients = clients
        self.region = config.aws_region

    def _descriptor(self, kind: ResourceKind, identifier: str) -> ResourceDescriptor:
        return ResourceDescriptor(kind=kind, identifier=identifier, region=self.region)

    def _lookup_failed(self, kind: ResourceKind, pattern: str, error: Exception) -> OperationOutcome:
        logger.error("Failed to list %s matching %s: %s", kind.value, pattern, error_message(error))
        return OperationOutcome(
            self._descriptor(kind, pattern),
            OperationStatus.FAILED,
            f"lookup failed: {error_message(error)}",
        )

    def pre_terraform(self) -> Discovery:
        """Resources that collide with a fresh Terraform apply, in deletion order."""
        found = Discovery()
        found.add(self._descriptor(ResourceKind.KMS_ALIAS, self.config.kms_alias))
        for name in self.config.log_groups:
            found.add(self._descriptor(ResourceKind.LOG_GROUP, name))
        found.extend(self.iam_roles())
        found.extend(self.iam_policies())
        for repo in self.config.naming.ecr_repositories:
            found.add(self._descriptor(ResourceKind.ECR_REPO, repo))
        found.add(self._descriptor(ResourceKind.EFS_FILESYSTEM, self.config.naming.efs_creation_token))
        return found

    def iam_roles(self) -> Discovery:
        found = Discovery()
        prefixes = self.config.iam_role_prefixes
        try:
            roles = paginate(self.clients["iam"], "list_roles", "Roles")
        except (ClientError, BotoCoreError) as e:
            found.failures.append(self._lookup_failed(ResourceKind.IAM_ROLE, "|".join(prefixes), e))
            return found

        for prefix in prefixes:
            matches = [r["RoleName"] for r in roles if r["RoleName"].startswith(prefix)]
            if not matches:
                logger.info("No existing IAM roles found with prefix: %s", prefix)
            for name in matches:
                found.add(self._descriptor(ResourceKind.IAM_ROLE, name))
        return found

    def iam_policies(self) -> Discovery:
        found = Discovery()
        prefixes = self.config.iam_policy_prefixes
        try:
            policies = paginate(self.clients["iam"], "list_policies", "Policies", Scope="Local")
        except (ClientError, BotoCoreError) as e:
            found.failures.append(self._lookup_failed(ResourceKind.IAM_POLICY, "|".join(prefixes), e))
            return found

        for prefix in prefixes:
            matches = [p["Arn"] for p in policies if p["PolicyName"].startswith(prefix)]
            if not matches:
                logger.info("No existing IAM policies found with prefix: %s", prefix)
            for arn in matches:
                found.add(self._descriptor(ResourceKind.IAM_POLICY, arn))
        return found

    def controller_networking(self, account_id: str) -> Discovery:
        """Load balancers, target groups and security groups tagged to the cluster.

        When the account is unknown the credentials are unusable and the
        lookups are skipped.
        """
        found = Discovery()
        if account_id == "unknown":
            logger.warning("AWS account unknown; skipping tag-based load balancer cleanup")
            return found

        tag_key = self.config.naming.cluster_tag_key
        cluster = self.config.cluster_name
        tagging = self.clients["resourcegroupstaggingapi"]

        for kind, resource_type in (
            (ResourceKind.LOAD_BALANCER, LOAD_BALANCER_RESOURCE_TYPE),
            (ResourceKind.TARGET_GROUP, TARGET_GROUP_RESOURCE_TYPE),
        ):
            try:
                mappings = paginate(
                    tagging,
                    "get_resources",
                    "ResourceTagMappingList",
                    ResourceTypeFilters=[resource_type],
                    TagFilters=[{"Key": tag_key, "Values": [cluster]}],
                )
            except (ClientError, BotoCoreError) as e:
                found.failures.append(self._lookup_failed(kind, f"tag:{tag_key}={cluster}", e))
                continue
            for mapping in mappings:
                found.add(self._descriptor(kind, mapping["ResourceARN"]))

        try:
            groups = paginate(
                self.clients["ec2"],
                "describe_security_groups",
                "SecurityGroups",
                Filters=[{"Name": f"tag:{tag_key}", "Values": [cluster]}],
            )
        except (ClientError, BotoCoreError) as e:
            found.failures.append(self._lookup_failed(ResourceKind.SECURITY_GROUP, f"tag:{tag_key}={cluster}", e))
        else:
            for group in groups:
                found.add(self._descriptor(ResourceKind.SECURITY_GROUP, group["GroupId"]))

        return found
