"""GCP service identity for the interception proxy.

The identity is bound to roles/container.admin at project scope by default.
That grant is intentionally broad: the proxy needs to observe and rewrite
traffic across the cluster.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from kubemitm.config.settings import IdentitySettings
from kubemitm.errors import CommandFailed
from kubemitm.kubernetes.commands import CommandResult, CommandRunner
from kubemitm.observability.logging import get_logger
from kubemitm.observability.metrics import control_plane_retries_total
from kubemitm.provisioning.context import ClusterContext


log = get_logger(__name__)

ALREADY_EXISTS_MARKERS = ("already exists", "ALREADY_EXISTS")

# A freshly created account is not visible to policy bindings until IAM
# propagates it, so "does not exist" is retried alongside server-side errors.
TRANSIENT_MARKERS = (
    "does not exist",
    "UNAVAILABLE",
    "RESOURCE_EXHAUSTED",
    "DEADLINE_EXCEEDED",
    "INTERNAL",
    "concurrent policy changes",
    "HTTPError 429",
    "HTTPError 500",
    "HTTPError 502",
    "HTTPError 503",
)


def _is_transient(result: CommandResult) -> bool:
    return not result.ok and any(marker in result.stderr for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class ServiceIdentity:
    """A GCP IAM service account."""

    name: str
    project_id: str

    @property
    def email(self) -> str:
        return f"{self.name}@{self.project_id}.iam.gserviceaccount.com"

    @property
    def member(self) -> str:
        return f"serviceAccount:{self.email}"


class IdentityProvisioner:
    """Creates the proxy's IAM service account and its role bindings."""

    def __init__(self, runner: CommandRunner, settings: IdentitySettings) -> None:
        self.runner = runner
        self.settings = settings

    async def _gcloud(self, args: list[str]) -> CommandResult:
        """Run a gcloud IAM command, retrying transient failures with backoff."""
        operation = " ".join(args[:4])
        result = await self.runner.run(args)
        for attempt in range(1, self.settings.max_retries):
            if not _is_transient(result):
                return result
            control_plane_retries_total.labels(operation=operation).inc()
            log.warning(
                "iam_transient_error",
                operation=operation,
                error=result.stderr[:200],
                attempt=attempt,
            )
            await asyncio.sleep(self.settings.retry_base_delay * 2 ** (attempt - 1))
            result = await self.runner.run(args)
        return result

    async def ensure_identity(self, context: ClusterContext) -> ServiceIdentity:
        """Create the service account unless it already exists."""
        identity = ServiceIdentity(
            name=self.settings.service_account_name,
            project_id=context.project_id,
        )
        result = await self._gcloud(
            [
                "gcloud",
                "iam",
                "service-accounts",
                "create",
                identity.name,
                "--display-name",
                self.settings.display_name,
                "--project",
                identity.project_id,
            ]
        )
        if result.ok:
            log.info("service_identity_created", email=identity.email)
            return identity
        if any(marker in result.stderr for marker in ALREADY_EXISTS_MARKERS):
            log.info("service_identity_exists", email=identity.email)
            return identity
        raise CommandFailed(
            f"Failed to create service account {identity.email}: {result.stderr[:500]}",
            retryable=_is_transient(result),
            details={"returncode": result.returncode},
        )

    async def bind_role(self, identity: ServiceIdentity, role: str, scope: str) -> None:
        """Bind a project-scope role; IAM policy bindings are set-like, so repeats are no-ops."""
        result = await self._gcloud(
            [
                "gcloud",
                "projects",
                "add-iam-policy-binding",
                scope,
                "--member",
                identity.member,
                "--role",
                role,
                "--condition",
                "None",
                "--quiet",
            ]
        )
        if not result.ok:
            raise CommandFailed(
                f"Failed to bind {role} to {identity.member}: {result.stderr[:500]}",
                retryable=_is_transient(result),
                details={"returncode": result.returncode, "role": role},
            )
        log.info("role_bound", member=identity.member, role=role, scope=scope)


__all__ = ["IdentityProvisioner", "ServiceIdentity"]
