"""Dynamo Cleanup - idempotent, dependency-ordered teardown of Dynamo on EKS.

Drives every resource created by the installer (cluster applications,
IAM, KMS, logs, ECR, EFS, load balancers, Terraform modules, local
artifacts) from present to absent and reports one outcome per resource.
"""

__version__ = "0.1.0"

from .config import RunConfig
from .exceptions import CleanupError, ProbeError
from .models import OperationOutcome, OperationStatus, ResourceDescriptor, ResourceKind, TeardownRun
from .orchestrator import TeardownOrchestrator
from .reporting import StateReporter

__all__ = [
    "CleanupError",
    "OperationOutcome",
    "OperationStatus",
    "ProbeError",
    "ResourceDescriptor",
    "ResourceKind",
    "RunConfig",
    "StateReporter",
    "TeardownOrchestrator",
    "TeardownRun",
]
