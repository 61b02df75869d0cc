import json
import logging

import pytest

from dynamo_cleanup.models import OperationOutcome, OperationStatus, ResourceDescriptor, ResourceKind, TeardownRun
from dynamo_cleanup.reporting import StateReporter, follow_up_command


def _outcome(kind, identifier, status, detail=""):
    return OperationOutcome(ResourceDescriptor(kind, identifier, "us-west-2"), status, detail)


def test_record_is_append_only_and_logged(caplog):
    reporter = StateReporter()
    with caplog.at_level(logging.INFO, logger="dynamo_cleanup"):
        reporter.record(_outcome(ResourceKind.ECR_REPO, "dynamo-base", OperationStatus.DELETED))
        reporter.record(_outcome(ResourceKind.IAM_ROLE, "r1", OperationStatus.FAILED, "AccessDenied"))

    assert [o.resource.identifier for o in reporter.outcomes] == ["dynamo-base", "r1"]
    assert "Deleted: EcrRepo:dynamo-base" in caplog.text
    assert any(r.levelno == logging.ERROR and "IamRole:r1" in r.getMessage() for r in caplog.records)


def test_duplicate_descriptor_rejected():
    reporter = StateReporter()
    reporter.record(_outcome(ResourceKind.ECR_REPO, "dynamo-base", OperationStatus.DELETED))
    with pytest.raises(ValueError):
        reporter.record(_outcome(ResourceKind.ECR_REPO, "dynamo-base", OperationStatus.NOT_FOUND))


def test_summary_counts_and_lists_failures():
    reporter = StateReporter()
    reporter.record(_outcome(ResourceKind.ECR_REPO, "dynamo-base", OperationStatus.DELETED))
    reporter.record(_outcome(ResourceKind.LOG_GROUP, "/aws/eks/c/api", OperationStatus.NOT_FOUND))
    reporter.record(_outcome(ResourceKind.IAM_ROLE, "c-cluster-1", OperationStatus.FAILED, "AccessDenied"))

    summary = reporter.summary()

    assert "Deleted=1" in summary
    assert "NotFound=1" in summary
    assert "Failed=1" in summary
    assert "IamRole:c-cluster-1: AccessDenied" in summary
    assert "aws iam delete-role --role-name c-cluster-1" in summary


def test_summary_without_failures_has_no_follow_up():
    reporter = StateReporter()
    reporter.record(_outcome(ResourceKind.ECR_REPO, "dynamo-base", OperationStatus.NOT_FOUND))
    assert "manual attention" not in reporter.summary()


def test_follow_up_commands():
    helm = ResourceDescriptor(ResourceKind.HELM_RELEASE, "dynamo-cloud/dynamo-platform")
    assert follow_up_command(helm) == "helm uninstall dynamo-platform -n dynamo-cloud"
    everything = ResourceDescriptor(ResourceKind.TERRAFORM_MODULE, "*")
    assert follow_up_command(everything) == "terraform destroy -auto-approve"
    assert follow_up_command(ResourceDescriptor(ResourceKind.CLUSTER, "c")) is None


def test_write_json(tmp_path):
    reporter = StateReporter()
    reporter.record(_outcome(ResourceKind.IAM_ROLE, "r1", OperationStatus.FAILED, "AccessDenied"))
    run = TeardownRun(cluster_name="c", region="us-west-2", account_id="123456789012")
    run.finalize(reporter.outcomes)

    path = tmp_path / "reports" / "teardown.json"
    reporter.write_json(run, path)

    data = json.loads(path.read_text())
    assert data["disposition"] == "partial"
    assert data["counts"]["Failed"] == 1
    assert data["outcomes"][0]["identifier"] == "r1"
    assert data["follow_up"] == [{"resource": "IamRole:r1", "command": "aws iam delete-role --role-name r1"}]
