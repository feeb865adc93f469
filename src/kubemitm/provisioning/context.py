"""Resolve the target GKE cluster from the operator's ambient session."""

from __future__ import annotations

from dataclasses import dataclass

from kubernetes import config
from kubernetes.config.config_exception import ConfigException

from kubemitm.errors import CommandFailed, UnresolvedContext
from kubemitm.kubernetes.commands import CommandRunner
from kubemitm.observability.logging import get_logger


log = get_logger(__name__)

GKE_CONTEXT_PREFIX = "gke"
GKE_CONTEXT_PARTS = 4
GCLOUD_UNSET = "(unset)"


@dataclass(frozen=True)
class ClusterContext:
    """Identity of the cluster every mutation in a run targets."""

    project_id: str
    cluster_name: str
    cluster_location: str
    kube_context: str | None = None

    def __post_init__(self) -> None:
        missing = [
            field
            for field in ("project_id", "cluster_name", "cluster_location")
            if not getattr(self, field)
        ]
        if missing:
            raise UnresolvedContext(
                f"Could not determine {', '.join(missing)}",
                details={"missing": missing},
            )


def parse_gke_context(name: str) -> tuple[str, str, str]:
    """Split ``gke_<project>_<location>_<cluster>`` into its parts.

    Raises:
        UnresolvedContext: If the name is not a GKE kubeconfig context.
    """
    parts = name.split("_")
    if len(parts) != GKE_CONTEXT_PARTS or parts[0] != GKE_CONTEXT_PREFIX or not all(parts):
        raise UnresolvedContext(
            f"Current kubeconfig context {name!r} is not a GKE context "
            "(expected gke_<project>_<location>_<cluster>)",
            details={"context": name},
        )
    _, project, location, cluster = parts
    return project, location, cluster


class ClusterContextResolver:
    """Derives project, cluster and location from gcloud and kubeconfig."""

    def __init__(self, runner: CommandRunner, *, kubeconfig_path: str | None = None) -> None:
        self.runner = runner
        self.kubeconfig_path = kubeconfig_path

    async def resolve(self) -> ClusterContext:
        """Resolve the cluster context; fails closed.

        Raises:
            UnresolvedContext: If any field cannot be determined.
        """
        context_name = self._current_kube_context()
        context_project, location, cluster = parse_gke_context(context_name)
        project = await self._gcloud_project() or context_project

        if project != context_project:
            log.warning(
                "project_mismatch",
                gcloud_project=project,
                context_project=context_project,
            )

        context = ClusterContext(
            project_id=project,
            cluster_name=cluster,
            cluster_location=location,
            kube_context=context_name,
        )
        log.info(
            "cluster_context_resolved",
            project=context.project_id,
            cluster=context.cluster_name,
            location=context.cluster_location,
        )
        return context

    async def fetch_credentials(self, context: ClusterContext) -> None:
        """Refresh the kubeconfig entry for the target cluster."""
        await self.runner.check(
            [
                "gcloud",
                "container",
                "clusters",
                "get-credentials",
                context.cluster_name,
                "--zone",
                context.cluster_location,
                "--project",
                context.project_id,
            ]
        )
        log.info("cluster_credentials_fetched", cluster=context.cluster_name)

    def _current_kube_context(self) -> str:
        try:
            _, active = config.list_kube_config_contexts(config_file=self.kubeconfig_path)
        except (ConfigException, OSError) as e:
            raise UnresolvedContext(f"No usable kubeconfig: {e}") from e
        if not active or not active.get("name"):
            raise UnresolvedContext("kubeconfig has no current context")
        return str(active["name"])

    async def _gcloud_project(self) -> str | None:
        try:
            result = await self.runner.run(["gcloud", "config", "get-value", "project"])
        except CommandFailed as e:
            raise UnresolvedContext(e.message, details=e.details) from e
        value = result.stdout.strip() if result.ok else ""
        if not value or value == GCLOUD_UNSET:
            return None
        return value.splitlines()[-1].strip()


__all__ = [
    "ClusterContext",
    "ClusterContextResolver",
    "parse_gke_context",
]
