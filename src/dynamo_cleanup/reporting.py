"""Outcome ledger for a teardown run.

Outcomes are logged as they are recorded and summarized once at the end.
Failed entries carry a follow-up command so an operator can finish the
job by hand.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any

from .models import OperationOutcome, OperationStatus, ResourceDescriptor, ResourceKind, TeardownRun

logger = logging.getLogger(__name__)

_FOLLOW_UP: dict[ResourceKind, str] = {
    ResourceKind.KMS_ALIAS: "aws kms delete-alias --alias-name {id} --region {region}",
    ResourceKind.LOG_GROUP: "aws logs delete-log-group --log-group-name {id} --region {region}",
    ResourceKind.IAM_ROLE: "aws iam delete-role --role-name {id}",
    ResourceKind.IAM_POLICY: "aws iam delete-policy --policy-arn {id}",
    ResourceKind.ECR_REPO: "aws ecr delete-repository --repository-name {id} --force --region {region}",
    ResourceKind.EFS_FILESYSTEM: (
        "aws efs describe-file-systems --creation-token {id} --region {region}  "
        "# then delete-mount-target / delete-file-system"
    ),
    ResourceKind.LOAD_BALANCER: "aws elbv2 delete-load-balancer --load-balancer-arn {id} --region {region}",
    ResourceKind.TARGET_GROUP: "aws elbv2 delete-target-group --target-group-arn {id} --region {region}",
    ResourceKind.SECURITY_GROUP: "aws ec2 delete-security-group --group-id {id} --region {region}",
    ResourceKind.ARGO_APPLICATION: "kubectl delete application {name} -n {namespace}",
    ResourceKind.K8S_NAMESPACE: "kubectl delete namespace {id}",
    ResourceKind.CUSTOM_RESOURCE_DEFINITION: (
        "kubectl patch crd {id} -p '{{\"metadata\":{{\"finalizers\":[]}}}}' --type=merge && kubectl delete crd {id}"
    ),
    ResourceKind.HELM_RELEASE: "helm uninstall {name} -n {namespace}",
    ResourceKind.TERRAFORM_MODULE: "terraform destroy -auto-approve -target=module.{id}",
    ResourceKind.LOCAL_PATH: "rm -rf {id}",
}


def follow_up_command(resource: ResourceDescriptor) -> str | None:
    """A manual command that finishes the deletion of ``resource``, if one is known."""
    template = _FOLLOW_UP.get(resource.kind)
    if template is None:
        return None
    namespace, _, name = resource.identifier.partition("/")
    if resource.kind == ResourceKind.TERRAFORM_MODULE and resource.identifier == "*":
        return "terraform destroy -auto-approve"
    return template.format(id=resource.identifier, region=resource.region, namespace=namespace, name=name)


class StateReporter:
    """Append-only record of outcomes in the order they happened."""

    def __init__(self) -> None:
        self._outcomes: list[OperationOutcome] = []
        self._seen: set[ResourceDescriptor] = set()

    @property
    def outcomes(self) -> list[OperationOutcome]:
        return list(self._outcomes)

    def recorded(self, resource: ResourceDescriptor) -> bool:
        return resource in self._seen

    def record(self, outcome: OperationOutcome) -> OperationOutcome:
        if outcome.resource in self._seen:
            raise ValueError(f"Outcome already recorded for {outcome.resource}")
        self._seen.add(outcome.resource)
        self._outcomes.append(outcome)

        message = f"{outcome.status.value}: {outcome.resource}"
        if outcome.detail:
            message += f" ({outcome.detail})"
        if outcome.status == OperationStatus.FAILED:
            logger.error(message)
        elif outcome.status == OperationStatus.SKIPPED:
            logger.warning(message)
        else:
            logger.info(message)
        return outcome

    def record_all(self, outcomes: list[OperationOutcome]) -> None:
        for outcome in outcomes:
            self.record(outcome)

    def counts(self) -> dict[OperationStatus, int]:
        counter = Counter(o.status for o in self._outcomes)
        return {status: counter.get(status, 0) for status in OperationStatus}

    def failures(self) -> list[OperationOutcome]:
        return [o for o in self._outcomes if o.failed]

    def summary(self) -> str:
        counts = self.counts()
        lines = [
            "Teardown summary: "
            + ", ".join(f"{status.value}={counts[status]}" for status in OperationStatus)
        ]
        failures = self.failures()
        if failures:
            lines.append(f"{len(failures)} resource(s) need manual attention:")
            for outcome in failures:
                lines.append(f"  - {outcome.resource}: {outcome.detail or 'no detail'}")
                command = follow_up_command(outcome.resource)
                if command:
                    lines.append(f"      $ {command}")
        return "\n".join(lines)

    def to_dict(self, run: TeardownRun) -> dict[str, Any]:
        payload = run.to_dict()
        payload["counts"] = {status.value: n for status, n in self.counts().items()}
        payload["follow_up"] = [
            {"resource": str(o.resource), "command": follow_up_command(o.resource)} for o in self.failures()
        ]
        return payload

    def write_json(self, run: TeardownRun, path: Path) -> None:
        """Write the finalized run to ``path`` as JSON."""
        payload = self.to_dict(run)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
