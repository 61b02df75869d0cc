"""Drives cloud resources from "exists" to "absent".

Each supported kind has a delete routine that performs the required
sub-steps (policy detachment, mount-target removal, alias resolution)
before the final delete call. Every call path ends in exactly one
OperationOutcome; nothing is raised to the caller.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError

from .clients import AwsClients, paginate
from .config import RunConfig
from .exceptions import DeletionTimeout, ProbeError
from .models import OperationOutcome, OperationStatus, ResourceDescriptor, ResourceKind
from .polling import wait_until
from .probe import ResourceProbe, error_message, is_not_found

logger = logging.getLogger(__name__)


class ResourceReconciler:
    """Deletes one cloud resource per call, gated by the probe."""

    def __init__(
        self,
        config: RunConfig,
        clients: AwsClients,
        probe: ResourceProbe | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.clients = clients
        self.probe = probe or ResourceProbe(clients)
        self._sleep = sleep
        self._clock = clock
        self._deleters: dict[ResourceKind, Callable[[ResourceDescriptor], str]] = {
            ResourceKind.KMS_ALIAS: self._delete_kms_alias,
            ResourceKind.LOG_GROUP: self._delete_log_group,
            ResourceKind.IAM_ROLE: self._delete_iam_role,
            ResourceKind.IAM_POLICY: self._delete_iam_policy,
            ResourceKind.ECR_REPO: self._delete_ecr_repo,
            ResourceKind.EFS_FILESYSTEM: self._delete_efs,
            ResourceKind.LOAD_BALANCER: self._delete_load_balancer,
            ResourceKind.TARGET_GROUP: self._delete_target_group,
            ResourceKind.SECURITY_GROUP: self._delete_security_group,
        }

    def delete(self, descriptor: ResourceDescriptor) -> OperationOutcome:
        """Drive one resource to absent and report what happened."""
        deleter = self._deleters.get(descriptor.kind)
        if deleter is None:
            return OperationOutcome(
                descriptor, OperationStatus.FAILED, f"Unsupported resource kind: {descriptor.kind.value}"
            )

        probe_note = ""
        try:
            if not self.probe.exists(descriptor):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND)
        except ProbeError as e:
            # Unknown state is treated as present.
            logger.warning("%s; attempting delete anyway", e)
            probe_note = f"probe failed: {e.message}; "

        if self.config.dry_run:
            return OperationOutcome(descriptor, OperationStatus.SKIPPED, "dry run")

        try:
            detail = deleter(descriptor)
        except DeletionTimeout as e:
            return OperationOutcome(descriptor, OperationStatus.FAILED, probe_note + e.message)
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                return OperationOutcome(descriptor, OperationStatus.NOT_FOUND, probe_note + error_message(e))
            return OperationOutcome(descriptor, OperationStatus.FAILED, probe_note + error_message(e))

        return OperationOutcome(descriptor, OperationStatus.DELETED, probe_note + detail)

    # -- KMS ---------------------------------------------------------------

    def _delete_kms_alias(self, descriptor: ResourceDescriptor) -> str:
        kms = self.clients["kms"]
        metadata = kms.describe_key(KeyId=descriptor.identifier)["KeyMetadata"]
        key_id = metadata["KeyId"]

        kms.delete_alias(AliasName=descriptor.identifier)
        logger.info("Deleted KMS alias %s", descriptor.identifier)

        if metadata.get("KeyState") == "PendingDeletion":
            return f"key {key_id} already pending deletion"

        window = self.config.timing.kms_pending_window_days
        kms.schedule_key_deletion(KeyId=key_id, PendingWindowInDays=window)
        logger.info("Scheduled KMS key %s for deletion in %d days", key_id, window)
        return f"key {key_id} scheduled for deletion in {window} days"

    # -- CloudWatch Logs ---------------------------------------------------

    def _delete_log_group(self, descriptor: ResourceDescriptor) -> str:
        self.clients["logs"].delete_log_group(logGroupName=descriptor.identifier)
        return ""

    # -- IAM ---------------------------------------------------------------

    def _delete_iam_role(self, descriptor: ResourceDescriptor) -> str:
        iam = self.clients["iam"]
        role_name = descriptor.identifier
        problems: list[str] = []

        attached = paginate(iam, "list_attached_role_policies", "AttachedPolicies", RoleName=role_name)
        for policy in attached:
            arn = policy["PolicyArn"]
            self._best_effort(
                problems,
                f"detach {arn}",
                lambda arn=arn: iam.detach_role_policy(RoleName=role_name, PolicyArn=arn),
            )

        inline = paginate(iam, "list_role_policies", "PolicyNames", RoleName=role_name)
        for policy_name in inline:
            self._best_effort(
                problems,
                f"delete inline {policy_name}",
                lambda name=policy_name: iam.delete_role_policy(RoleName=role_name, PolicyName=name),
            )

        profiles = paginate(iam, "list_instance_profiles_for_role", "InstanceProfiles", RoleName=role_name)
        for profile in profiles:
            profile_name = profile["InstanceProfileName"]
            self._best_effort(
                problems,
                f"remove from instance profile {profile_name}",
                lambda name=profile_name: iam.remove_role_from_instance_profile(
                    InstanceProfileName=name, RoleName=role_name
                ),
            )

        iam.delete_role(RoleName=role_name)
        logger.info(
            "Deleted IAM role %s (%d managed, %d inline policies)", role_name, len(attached), len(inline)
        )
        return "; ".join(problems)

    def _delete_iam_policy(self, descriptor: ResourceDescriptor) -> str:
        iam = self.clients["iam"]
        arn = descriptor.identifier
        problems: list[str] = []

        paginator = iam.get_paginator("list_entities_for_policy")
        roles: list[str] = []
        users: list[str] = []
        groups: list[str] = []
        for page in paginator.paginate(PolicyArn=arn):
            roles.extend(r["RoleName"] for r in page.get("PolicyRoles", []))
            users.extend(u["UserName"] for u in page.get("PolicyUsers", []))
            groups.extend(g["GroupName"] for g in page.get("PolicyGroups", []))

        for role in roles:
            self._best_effort(
                problems, f"detach from role {role}", lambda r=role: iam.detach_role_policy(RoleName=r, PolicyArn=arn)
            )
        for user in users:
            self._best_effort(
                problems, f"detach from user {user}", lambda u=user: iam.detach_user_policy(UserName=u, PolicyArn=arn)
            )
        for group in groups:
            self._best_effort(
                problems,
                f"detach from group {group}",
                lambda g=group: iam.detach_group_policy(GroupName=g, PolicyArn=arn),
            )

        versions = paginate(iam, "list_policy_versions", "Versions", PolicyArn=arn)
        for version in versions:
            if version.get("IsDefaultVersion"):
                continue
            version_id = version["VersionId"]
            self._best_effort(
                problems,
                f"delete version {version_id}",
                lambda v=version_id: iam.delete_policy_version(PolicyArn=arn, VersionId=v),
            )

        iam.delete_policy(PolicyArn=arn)
        logger.info("Deleted IAM policy %s", arn)
        return "; ".join(problems)

    # -- ECR ---------------------------------------------------------------

    def _delete_ecr_repo(self, descriptor: ResourceDescriptor) -> str:
        resp = self.clients["ecr"].delete_repository(repositoryName=descriptor.identifier, force=True)
        image_count = resp.get("repository", {}).get("imageCount") if isinstance(resp, dict) else None
        return f"{image_count} images removed" if image_count else ""

    # -- EFS ---------------------------------------------------------------

    def _delete_efs(self, descriptor: ResourceDescriptor) -> str:
        efs = self.clients["efs"]
        token = descriptor.identifier
        file_systems = efs.describe_file_systems(CreationToken=token).get("FileSystems", [])
        deleted: list[str] = []

        for fs in file_systems:
            fs_id = fs["FileSystemId"]
            mount_targets = efs.describe_mount_targets(FileSystemId=fs_id).get("MountTargets", [])
            for mt in mount_targets:
                mt_id = mt["MountTargetId"]
                try:
                    efs.delete_mount_target(MountTargetId=mt_id)
                    logger.info("Deleting mount target %s of %s", mt_id, fs_id)
                except (ClientError, BotoCoreError) as e:
                    if not is_not_found(e):
                        logger.warning("Failed to delete mount target %s: %s", mt_id, error_message(e))

            if mount_targets and not self._mount_targets_gone(fs_id):
                grace = self.config.timing.efs_mount_target_grace
                raise DeletionTimeout(
                    f"mount targets of {fs_id} still present after {grace:.0f}s; file system not deleted",
                    timeout_seconds=grace,
                )

            efs.delete_file_system(FileSystemId=fs_id)
            logger.info("Deleted EFS file system %s", fs_id)
            deleted.append(fs_id)

        return ", ".join(deleted)

    def _mount_targets_gone(self, fs_id: str) -> bool:
        efs = self.clients["efs"]

        def no_targets() -> bool:
            try:
                return not efs.describe_mount_targets(FileSystemId=fs_id).get("MountTargets")
            except ClientError as e:
                if is_not_found(e):
                    return True
                raise

        return wait_until(
            no_targets,
            timeout=self.config.timing.efs_mount_target_grace,
            interval=self.config.timing.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )

    # -- Networking created by in-cluster controllers ----------------------

    def _delete_load_balancer(self, descriptor: ResourceDescriptor) -> str:
        self.clients["elbv2"].delete_load_balancer(LoadBalancerArn=descriptor.identifier)
        return ""

    def _delete_target_group(self, descriptor: ResourceDescriptor) -> str:
        self.clients["elbv2"].delete_target_group(TargetGroupArn=descriptor.identifier)
        return ""

    def _delete_security_group(self, descriptor: ResourceDescriptor) -> str:
        self.clients["ec2"].delete_security_group(GroupId=descriptor.identifier)
        return ""

    @staticmethod
    def _best_effort(problems: list[str], action: str, call: Callable[[], object]) -> None:
        try:
            call()
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                return
            logger.warning("Failed to %s: %s", action, error_message(e))
            problems.append(f"failed to {action}: {error_message(e)}")
