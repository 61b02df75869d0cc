"""Read-only existence checks for cloud resources.

The probe answers "does this resource exist?" and nothing else. It never
mutates state and only raises ProbeError when the answer is unknowable
(credentials, network, throttling, unexpected service errors).
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from .clients import AwsClients
from .exceptions import ProbeError
from .models import ResourceDescriptor, ResourceKind

logger = logging.getLogger(__name__)

# Error codes AWS uses to say "this resource is already gone".
NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "NotFoundException",
        "ResourceNotFoundException",
        "RepositoryNotFoundException",
        "FileSystemNotFound",
        "MountTargetNotFound",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "InvalidGroup.NotFound",
        "InvalidGroupId.NotFound",
    }
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", "") or str(error)
    return str(error)


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ClientError) and error_code(error) in NOT_FOUND_CODES


class ResourceProbe:
    """Checks existence of cluster-scoped AWS resources."""

    def __init__(self, clients: AwsClients):
        self.clients = clients
        self._checks: dict[ResourceKind, Callable[[str], bool]] = {
            ResourceKind.CLUSTER: self._cluster_exists,
            ResourceKind.KMS_ALIAS: self._kms_alias_exists,
            ResourceKind.LOG_GROUP: self._log_group_exists,
            ResourceKind.IAM_ROLE: self._iam_role_exists,
            ResourceKind.IAM_POLICY: self._iam_policy_exists,
            ResourceKind.ECR_REPO: self._ecr_repo_exists,
            ResourceKind.EFS_FILESYSTEM: self._efs_exists,
            ResourceKind.LOAD_BALANCER: self._load_balancer_exists,
            ResourceKind.TARGET_GROUP: self._target_group_exists,
            ResourceKind.SECURITY_GROUP: self._security_group_exists,
        }

    def supports(self, kind: ResourceKind) -> bool:
        return kind in self._checks

    def exists(self, descriptor: ResourceDescriptor) -> bool:
        """Return whether the resource exists.

        Raises:
            ProbeError: If existence could not be determined
        """
        check = self._checks.get(descriptor.kind)
        if check is None:
            raise ProbeError(
                f"No probe for resource kind {descriptor.kind.value}",
                resource_kind=descriptor.kind.value,
            )
        try:
            return check(descriptor.identifier)
        except ClientError as e:
            if is_not_found(e):
                return False
            raise ProbeError(
                f"Could not determine state of {descriptor}: {error_message(e)}",
                resource_kind=descriptor.kind.value,
                error_code=error_code(e),
            ) from e
        except BotoCoreError as e:
            raise ProbeError(
                f"Could not determine state of {descriptor}: {e}",
                resource_kind=descriptor.kind.value,
            ) from e

    def _cluster_exists(self, name: str) -> bool:
        self.clients["eks"].describe_cluster(name=name)
        return True

    def _kms_alias_exists(self, alias: str) -> bool:
        self.clients["kms"].describe_key(KeyId=alias)
        return True

    def _log_group_exists(self, name: str) -> bool:
        resp = self.clients["logs"].describe_log_groups(logGroupNamePrefix=name)
        return any(g.get("logGroupName") == name for g in resp.get("logGroups", []))

    def _iam_role_exists(self, role_name: str) -> bool:
        self.clients["iam"].get_role(RoleName=role_name)
        return True

    def _iam_policy_exists(self, policy_arn: str) -> bool:
        self.clients["iam"].get_policy(PolicyArn=policy_arn)
        return True

    def _ecr_repo_exists(self, repo: str) -> bool:
        resp = self.clients["ecr"].describe_repositories(repositoryNames=[repo])
        return bool(resp.get("repositories"))

    def _efs_exists(self, creation_token: str) -> bool:
        resp = self.clients["efs"].describe_file_systems(CreationToken=creation_token)
        return bool(resp.get("FileSystems"))

    def _load_balancer_exists(self, arn: str) -> bool:
        resp = self.clients["elbv2"].describe_load_balancers(LoadBalancerArns=[arn])
        return bool(resp.get("LoadBalancers"))

    def _target_group_exists(self, arn: str) -> bool:
        resp = self.clients["elbv2"].describe_target_groups(TargetGroupArns=[arn])
        return bool(resp.get("TargetGroups"))

    def _security_group_exists(self, group_id: str) -> bool:
        resp = self.clients["ec2"].describe_security_groups(GroupIds=[group_id])
        return bool(resp.get("SecurityGroups"))


def describe_account(clients: AwsClients) -> str:
    """Return the caller's AWS account id, or "unknown" when credentials fail."""
    try:
        identity: dict[str, Any] = clients["sts"].get_caller_identity()
        return identity.get("Account") or "unknown"
    except (ClientError, BotoCoreError) as e:
        logger.warning("Could not determine AWS account: %s", error_message(e))
        return "unknown"
