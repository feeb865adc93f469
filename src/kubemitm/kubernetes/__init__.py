"""kubemitm Kubernetes package.

Kubernetes API access and external CLI execution.
"""

from kubemitm.kubernetes.clients import (
    ApplyOutcome,
    ClusterClients,
    ControlPlane,
    load_cluster_clients,
)
from kubemitm.kubernetes.commands import CommandResult, CommandRunner


__all__ = [
    "ApplyOutcome",
    "ClusterClients",
    "CommandResult",
    "CommandRunner",
    "ControlPlane",
    "load_cluster_clients",
]
