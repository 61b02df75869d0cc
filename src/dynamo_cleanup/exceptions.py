"""Custom exceptions for Dynamo Cleanup.

Defines the exception hierarchy used across probing, reconciliation
and the Terraform/Helm wrappers.
"""

from __future__ import annotations

from typing import Any


class CleanupError(Exception):
    """Base exception for all cleanup errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.error_code = error_code

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ProbeError(CleanupError):
    """Raised when the state of a resource cannot be determined."""

    def __init__(self, message: str, resource_kind: str, **kwargs):
        super().__init__(message, **kwargs)
        self.resource_kind = resource_kind
        self.details["resource_kind"] = resource_kind


class DeletionTimeout(CleanupError):
    """Raised when a bounded wait for deletion is exceeded."""

    def __init__(self, message: str, timeout_seconds: float, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class ConfigurationError(CleanupError):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, config_key: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.config_key = config_key
        if config_key:
            self.details["config_key"] = config_key


class CommandError(CleanupError):
    """Raised when an external command cannot be started."""

    def __init__(self, message: str, command: list[str], **kwargs):
        super().__init__(message, **kwargs)
        self.command = command
        self.details["command"] = " ".join(command)


class TerraformError(CleanupError):
    """Raised when a Terraform precondition (init, state access) fails."""

    def __init__(self, message: str, step: str, **kwargs):
        super().__init__(message, **kwargs)
        self.step = step
        self.details["step"] = step


class ClusterAccessError(CleanupError):
    """Raised when the EKS cluster API cannot be reached."""

    def __init__(self, message: str, cluster_name: str, **kwargs):
        super().__init__(message, **kwargs)
        self.cluster_name = cluster_name
        self.details["cluster_name"] = cluster_name
