"""Pytest configuration and shared fixtures for Dynamo Cleanup tests.

The Dummy* classes below stand in for boto3 clients. They keep just enough
state to answer describe/list calls consistently after deletes, and they
record every call so tests can assert on call order and counts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest
from botocore.exceptions import ClientError

from dynamo_cleanup.clients import AwsClients
from dynamo_cleanup.config import LocalConfig, RunConfig, TerraformConfig, TimingConfig
from dynamo_cleanup.shell import CommandResult

ACCOUNT_ID = "123456789012"
CLUSTER = "dynamo-on-eks"
REGION = "us-west-2"


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class DummyPaginator:
    """Single-page paginator that delegates to the client's method of the same name."""

    def __init__(self, method: Callable[..., dict]):
        self._method = method

    def paginate(self, **kwargs):
        yield self._method(**kwargs)


class DummyClient:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def _record(self, _operation: str, **kwargs) -> None:
        self.calls.append((_operation, kwargs))

    def get_paginator(self, operation: str) -> DummyPaginator:
        return DummyPaginator(getattr(self, operation))

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.call_names().count(name)


class DummySTS(DummyClient):
    def __init__(self, account: str | None = ACCOUNT_ID):
        super().__init__()
        self.account = account

    def get_caller_identity(self):
        self._record("get_caller_identity")
        if self.account is None:
            raise client_error("ExpiredToken", "The security token included in the request is expired")
        return {"Account": self.account}


class DummyEKS(DummyClient):
    def __init__(self, clusters=()):
        super().__init__()
        self.clusters = set(clusters)

    def describe_cluster(self, name):
        self._record("describe_cluster", name=name)
        if name not in self.clusters:
            raise client_error("ResourceNotFoundException", f"No cluster found for name: {name}.")
        return {"cluster": {"name": name, "endpoint": "https://example.eks", "certificateAuthority": {"data": ""}}}


class DummyKMS(DummyClient):
    def __init__(self):
        super().__init__()
        self.aliases: dict[str, str] = {}
        self.keys: dict[str, str] = {}

    def add_alias(self, alias: str, key_id: str = "key-1234", state: str = "Enabled") -> None:
        self.aliases[alias] = key_id
        self.keys[key_id] = state

    def describe_key(self, KeyId):
        self._record("describe_key", KeyId=KeyId)
        key_id = self.aliases.get(KeyId, KeyId if KeyId in self.keys else None)
        if key_id is None:
            raise client_error("NotFoundException", f"Alias {KeyId} is not found.")
        return {"KeyMetadata": {"KeyId": key_id, "KeyState": self.keys[key_id]}}

    def delete_alias(self, AliasName):
        self._record("delete_alias", AliasName=AliasName)
        if AliasName not in self.aliases:
            raise client_error("NotFoundException")
        del self.aliases[AliasName]

    def schedule_key_deletion(self, KeyId, PendingWindowInDays):
        self._record("schedule_key_deletion", KeyId=KeyId, PendingWindowInDays=PendingWindowInDays)
        self.keys[KeyId] = "PendingDeletion"
        return {"KeyId": KeyId, "KeyState": "PendingDeletion"}


class DummyLogs(DummyClient):
    def __init__(self, groups=()):
        super().__init__()
        self.groups = set(groups)

    def describe_log_groups(self, logGroupNamePrefix):
        self._record("describe_log_groups", logGroupNamePrefix=logGroupNamePrefix)
        return {"logGroups": [{"logGroupName": g} for g in sorted(self.groups) if g.startswith(logGroupNamePrefix)]}

    def delete_log_group(self, logGroupName):
        self._record("delete_log_group", logGroupName=logGroupName)
        if logGroupName not in self.groups:
            raise client_error("ResourceNotFoundException", "The specified log group does not exist.")
        self.groups.discard(logGroupName)


class DummyIAM(DummyClient):
    def __init__(self):
        super().__init__()
        self.roles: dict[str, dict[str, list[str]]] = {}
        self.policies: dict[str, dict[str, Any]] = {}
        self.deny_delete_role: set = set()
        self.deny_detach: set = set()
        self.detach_errors: dict[str, Exception] = {}
        self.fail_listing = False

    def add_role(self, name: str, attached=(), inline=(), profiles=()) -> None:
        self.roles[name] = {"attached": list(attached), "inline": list(inline), "profiles": list(profiles)}

    def add_policy(self, name: str, roles=(), versions=("v1",)) -> str:
        arn = f"arn:aws:iam::{ACCOUNT_ID}:policy/{name}"
        self.policies[arn] = {"name": name, "roles": list(roles), "versions": list(versions)}
        return arn

    def _role(self, name: str) -> dict[str, list[str]]:
        if name not in self.roles:
            raise client_error("NoSuchEntity", f"The role with name {name} cannot be found.")
        return self.roles[name]

    def _policy(self, arn: str) -> dict[str, Any]:
        if arn not in self.policies:
            raise client_error("NoSuchEntity", f"Policy {arn} was not found.")
        return self.policies[arn]

    def list_roles(self):
        self._record("list_roles")
        if self.fail_listing:
            raise client_error("AccessDenied", "not authorized to perform: iam:ListRoles")
        return {"Roles": [{"RoleName": n} for n in self.roles]}

    def get_role(self, RoleName):
        self._record("get_role", RoleName=RoleName)
        self._role(RoleName)
        return {"Role": {"RoleName": RoleName}}

    def list_attached_role_policies(self, RoleName):
        self._record("list_attached_role_policies", RoleName=RoleName)
        return {"AttachedPolicies": [{"PolicyArn": a} for a in self._role(RoleName)["attached"]]}

    def detach_role_policy(self, RoleName, PolicyArn):
        self._record("detach_role_policy", RoleName=RoleName, PolicyArn=PolicyArn)
        if PolicyArn in self.detach_errors:
            raise self.detach_errors[PolicyArn]
        if PolicyArn in self.deny_detach:
            raise client_error("AccessDenied", f"not authorized to detach {PolicyArn}")
        if RoleName in self.roles and PolicyArn in self.roles[RoleName]["attached"]:
            self.roles[RoleName]["attached"].remove(PolicyArn)

    def list_role_policies(self, RoleName):
        self._record("list_role_policies", RoleName=RoleName)
        return {"PolicyNames": list(self._role(RoleName)["inline"])}

    def delete_role_policy(self, RoleName, PolicyName):
        self._record("delete_role_policy", RoleName=RoleName, PolicyName=PolicyName)
        self._role(RoleName)["inline"].remove(PolicyName)

    def list_instance_profiles_for_role(self, RoleName):
        self._record("list_instance_profiles_for_role", RoleName=RoleName)
        return {"InstanceProfiles": [{"InstanceProfileName": p} for p in self._role(RoleName)["profiles"]]}

    def remove_role_from_instance_profile(self, InstanceProfileName, RoleName):
        self._record("remove_role_from_instance_profile", InstanceProfileName=InstanceProfileName, RoleName=RoleName)
        self._role(RoleName)["profiles"].remove(InstanceProfileName)

    def delete_role(self, RoleName):
        self._record("delete_role", RoleName=RoleName)
        self._role(RoleName)
        if RoleName in self.deny_delete_role:
            raise client_error("AccessDenied", f"User is not authorized to perform: iam:DeleteRole on {RoleName}")
        del self.roles[RoleName]

    def list_policies(self, Scope):
        self._record("list_policies", Scope=Scope)
        if self.fail_listing:
            raise client_error("AccessDenied", "not authorized to perform: iam:ListPolicies")
        return {"Policies": [{"PolicyName": p["name"], "Arn": arn} for arn, p in self.policies.items()]}

    def get_policy(self, PolicyArn):
        self._record("get_policy", PolicyArn=PolicyArn)
        self._policy(PolicyArn)
        return {"Policy": {"Arn": PolicyArn}}

    def list_entities_for_policy(self, PolicyArn):
        self._record("list_entities_for_policy", PolicyArn=PolicyArn)
        policy = self._policy(PolicyArn)
        return {
            "PolicyRoles": [{"RoleName": r} for r in policy["roles"]],
            "PolicyUsers": [],
            "PolicyGroups": [],
        }

    def list_policy_versions(self, PolicyArn):
        self._record("list_policy_versions", PolicyArn=PolicyArn)
        versions = self._policy(PolicyArn)["versions"]
        return {"Versions": [{"VersionId": v, "IsDefaultVersion": i == 0} for i, v in enumerate(versions)]}

    def delete_policy_version(self, PolicyArn, VersionId):
        self._record("delete_policy_version", PolicyArn=PolicyArn, VersionId=VersionId)
        self._policy(PolicyArn)["versions"].remove(VersionId)

    def delete_policy(self, PolicyArn):
        self._record("delete_policy", PolicyArn=PolicyArn)
        self._policy(PolicyArn)
        del self.policies[PolicyArn]


class DummyECR(DummyClient):
    def __init__(self, repos=()):
        super().__init__()
        self.repos = set(repos)

    def describe_repositories(self, repositoryNames):
        self._record("describe_repositories", repositoryNames=repositoryNames)
        found = [{"repositoryName": r} for r in repositoryNames if r in self.repos]
        if not found:
            raise client_error("RepositoryNotFoundException", "The repository does not exist")
        return {"repositories": found}

    def delete_repository(self, repositoryName, force):
        self._record("delete_repository", repositoryName=repositoryName, force=force)
        if repositoryName not in self.repos:
            raise client_error("RepositoryNotFoundException", "The repository does not exist")
        self.repos.discard(repositoryName)
        return {"repository": {"repositoryName": repositoryName}}


class DummyEFS(DummyClient):
    def __init__(self):
        super().__init__()
        self.file_systems: dict[str, str] = {}
        self.mount_targets: dict[str, list[str]] = {}
        self.sticky_mount_targets = False

    def add_file_system(self, token: str, fs_id: str = "fs-0abc", mount_targets=()) -> None:
        self.file_systems[token] = fs_id
        self.mount_targets[fs_id] = list(mount_targets)

    def describe_file_systems(self, CreationToken):
        self._record("describe_file_systems", CreationToken=CreationToken)
        fs_id = self.file_systems.get(CreationToken)
        return {"FileSystems": [{"FileSystemId": fs_id}] if fs_id else []}

    def describe_mount_targets(self, FileSystemId):
        self._record("describe_mount_targets", FileSystemId=FileSystemId)
        return {"MountTargets": [{"MountTargetId": m} for m in self.mount_targets.get(FileSystemId, [])]}

    def delete_mount_target(self, MountTargetId):
        self._record("delete_mount_target", MountTargetId=MountTargetId)
        if self.sticky_mount_targets:
            return
        for targets in self.mount_targets.values():
            if MountTargetId in targets:
                targets.remove(MountTargetId)

    def delete_file_system(self, FileSystemId):
        self._record("delete_file_system", FileSystemId=FileSystemId, mount_targets=list(self.mount_targets[FileSystemId]))
        if self.mount_targets.get(FileSystemId):
            raise client_error("FileSystemInUse", "File system has mount targets")
        self.file_systems = {t: f for t, f in self.file_systems.items() if f != FileSystemId}
        self.mount_targets.pop(FileSystemId, None)


class DummyELB(DummyClient):
    def __init__(self):
        super().__init__()
        self.load_balancers: set = set()
        self.target_groups: set = set()

    def describe_load_balancers(self, LoadBalancerArns):
        self._record("describe_load_balancers", LoadBalancerArns=LoadBalancerArns)
        if not all(a in self.load_balancers for a in LoadBalancerArns):
            raise client_error("LoadBalancerNotFound", "One or more load balancers not found")
        return {"LoadBalancers": [{"LoadBalancerArn": a} for a in LoadBalancerArns]}

    def describe_target_groups(self, TargetGroupArns):
        self._record("describe_target_groups", TargetGroupArns=TargetGroupArns)
        if not all(a in self.target_groups for a in TargetGroupArns):
            raise client_error("TargetGroupNotFound", "One or more target groups not found")
        return {"TargetGroups": [{"TargetGroupArn": a} for a in TargetGroupArns]}

    def delete_load_balancer(self, LoadBalancerArn):
        self._record("delete_load_balancer", LoadBalancerArn=LoadBalancerArn)
        self.load_balancers.discard(LoadBalancerArn)

    def delete_target_group(self, TargetGroupArn):
        self._record("delete_target_group", TargetGroupArn=TargetGroupArn)
        self.target_groups.discard(TargetGroupArn)


class DummyEC2(DummyClient):
    def __init__(self):
        super().__init__()
        self.security_groups: set = set()

    def describe_security_groups(self, GroupIds=None, Filters=None):
        self._record("describe_security_groups", GroupIds=GroupIds, Filters=Filters)
        if GroupIds:
            if not all(g in self.security_groups for g in GroupIds):
                raise client_error("InvalidGroup.NotFound", "The security group does not exist")
            return {"SecurityGroups": [{"GroupId": g} for g in GroupIds]}
        return {"SecurityGroups": [{"GroupId": g} for g in sorted(self.security_groups)]}

    def delete_security_group(self, GroupId):
        self._record("delete_security_group", GroupId=GroupId)
        self.security_groups.discard(GroupId)


class DummyTagging(DummyClient):
    def __init__(self, elb: DummyELB):
        super().__init__()
        self.elb = elb

    def get_resources(self, ResourceTypeFilters, TagFilters):
        self._record("get_resources", ResourceTypeFilters=ResourceTypeFilters, TagFilters=TagFilters)
        if ResourceTypeFilters == ["elasticloadbalancing:loadbalancer"]:
            arns = sorted(self.elb.load_balancers)
        else:
            arns = sorted(self.elb.target_groups)
        return {"ResourceTagMappingList": [{"ResourceARN": a} for a in arns]}


class DummyAws:
    """One dummy client per service, sharing nothing but the test's intent."""

    def __init__(self, account: str | None = ACCOUNT_ID):
        self.sts = DummySTS(account)
        self.eks = DummyEKS()
        self.kms = DummyKMS()
        self.logs = DummyLogs()
        self.iam = DummyIAM()
        self.ecr = DummyECR()
        self.efs = DummyEFS()
        self.elbv2 = DummyELB()
        self.ec2 = DummyEC2()
        self.tagging = DummyTagging(self.elbv2)

    def clients(self, region: str = REGION) -> AwsClients:
        return AwsClients(
            region,
            overrides={
                "sts": self.sts,
                "eks": self.eks,
                "kms": self.kms,
                "logs": self.logs,
                "iam": self.iam,
                "ecr": self.ecr,
                "efs": self.efs,
                "elbv2": self.elbv2,
                "ec2": self.ec2,
                "resourcegroupstaggingapi": self.tagging,
            },
        )

    def populate(self, cluster: str = CLUSTER) -> None:
        """Everything a completed install leaves behind."""
        self.kms.add_alias(f"alias/eks/{cluster}")
        self.logs.groups.update({f"/aws/eks/{cluster}/cluster", f"/aws/eks/{cluster}/api"})
        self.iam.add_role(
            f"{cluster}-cluster-20240101",
            attached=["arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"],
            inline=["logs"],
        )
        self.iam.add_role(f"{cluster}-ebs-csi-driver-20240101", attached=["arn:aws:iam::aws:policy/EBSCSI"])
        self.iam.add_role("unrelated-role")
        self.iam.add_policy(f"{cluster}-cluster-ClusterEncryption", roles=[f"{cluster}-cluster-20240101"])
        self.ecr.repos.update({"dynamo-operator", "dynamo-base"})
        self.efs.add_file_system("dynamo-on-eks", mount_targets=["fsmt-1", "fsmt-2"])
        self.elbv2.load_balancers.add("arn:aws:elasticloadbalancing:us-west-2:123456789012:loadbalancer/app/k8s-dynamo/1")
        self.elbv2.target_groups.add("arn:aws:elasticloadbalancing:us-west-2:123456789012:targetgroup/k8s-dynamo/2")
        self.ec2.security_groups.add("sg-0k8sdynamo")


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRunner:
    """CommandRunner stand-in.

    ``handler(command)`` returns (returncode, output) or (returncode, output, stderr).
    When stderr is merged it is appended to the output, as a real terminal would show it.
    """

    def __init__(self, handler: Callable[[list[str]], tuple] | None = None, binaries=("terraform", "helm")):
        self.handler = handler or (lambda command: (0, ""))
        self.commands: list[list[str]] = []
        self.binaries = set(binaries)

    def available(self, binary: str) -> bool:
        return binary in self.binaries

    def run(self, command, cwd=None, stream=True, merge_stderr=True) -> CommandResult:
        self.commands.append(list(command))
        returncode, output, *rest = self.handler(list(command))
        stderr = rest[0] if rest else ""
        if merge_stderr and stderr:
            return CommandResult(command=list(command), returncode=returncode, output=f"{stderr}\n{output}")
        return CommandResult(command=list(command), returncode=returncode, output=output, stderr=stderr)


class FakeTerraform:
    """Scripted terraform CLI keeping a module-level state list."""

    def __init__(self, modules=("data_addons", "eks_blueprints_addons", "eks", "vpc"), outputs=None):
        self.state = [f"module.{m}.aws_resource.this" for m in modules]
        self.outputs = dict(outputs or {})
        self.init_returncode = 0
        self.failing_modules: set = set()
        self.destroyed: list[str] = []

    def __call__(self, command: list[str]) -> tuple[int, str]:
        sub = command[1]
        if sub == "init":
            return self.init_returncode, "Terraform has been successfully initialized!"
        if sub == "output":
            name = command[-1]
            if name in self.outputs:
                return 0, self.outputs[name]
            return 1, f'Error: Output "{name}" not found'
        if sub == "state":
            return 0, "\n".join(self.state)
        if sub == "destroy":
            targets = [a.split("=", 1)[1][len("module."):] for a in command if a.startswith("-target=")]
            module = targets[0] if targets else "*"
            self.destroyed.append(module)
            if module in self.failing_modules:
                return 1, "Error: deleting EC2 Subnet: DependencyViolation"
            if module == "*":
                self.state = []
            else:
                self.state = [r for r in self.state if not r.startswith(f"module.{module}.")]
            return 0, "Destroy complete! Resources: 3 destroyed."
        return 0, ""


@pytest.fixture
def dummy_aws() -> DummyAws:
    return DummyAws()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfig:
    """Configuration rooted in a temporary directory."""
    return RunConfig(
        cluster_name=CLUSTER,
        aws_region=REGION,
        terraform=TerraformConfig(
            workspace_dir=tmp_path / "terraform" / "_LOCAL",
            var_file=tmp_path / "terraform" / "blueprint.tfvars",
        ),
        timing=TimingConfig(efs_mount_target_grace=30, poll_interval=5, pre_vpc_settle=30),
        local=LocalConfig(base_dir=tmp_path),
    )


@pytest.fixture
def dry_run_config(run_config: RunConfig) -> RunConfig:
    return run_config.with_overrides(dry_run=True)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep environment-driven configuration out of the tests."""
    for name in ("CLUSTER_NAME", "AWS_REGION", "DRY_RUN", "LOG_LEVEL", "TERRAFORM_DIR"):
        monkeypatch.delenv(name, raising=False)
