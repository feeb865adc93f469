"""Structured errors for provisioning runs."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


class ProvisioningError(RuntimeError):
    """Structured exception for provisioning failures."""

    default_code = "provisioning_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        step: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.step = step
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/status surfaces."""
        return {
            "code": self.code,
            "step": self.step,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the error as a compact JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


class UnresolvedContext(ProvisioningError):
    """Project, cluster name or location could not be determined."""

    default_code = "unresolved_context"


class CommandFailed(ProvisioningError):
    """An external CLI (gcloud, linkerd) exited non-zero or is missing."""

    default_code = "command_failed"


class TrustExtractionFailed(ProvisioningError):
    """The proxy CA certificate could not be read before the deadline."""

    default_code = "trust_extraction_failed"


class DeploymentNotFound(ProvisioningError):
    """No proxy Deployment matched the label selector."""

    default_code = "deployment_not_found"


class UnknownMesh(ProvisioningError):
    """Namespace mesh markers could not be classified."""

    default_code = "unknown_mesh"


class StepFailed(ProvisioningError):
    """An orchestrator step failed; wraps the underlying cause."""

    default_code = "step_failed"


def ensure_provisioning_error(
    error: Exception,
    *,
    step: str,
    details: dict[str, Any] | None = None,
) -> ProvisioningError:
    """Normalize unknown exceptions into a structured provisioning error."""
    if isinstance(error, ProvisioningError):
        if error.step is None:
            error.step = step
        return error

    merged_details = dict(details or {})
    merged_details.setdefault("exception_type", type(error).__name__)

    return StepFailed(
        str(error) or f"{type(error).__name__} during {step}",
        step=step,
        details=merged_details,
    )


__all__ = [
    "CommandFailed",
    "DeploymentNotFound",
    "ProvisioningError",
    "StepFailed",
    "TrustExtractionFailed",
    "UnknownMesh",
    "UnresolvedContext",
    "ensure_provisioning_error",
]
