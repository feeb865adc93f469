"""kubemitm - mesh-aware mitmproxy provisioning for GKE clusters.

Deploys a TLS-interception proxy into a Kubernetes namespace, propagates its
CA certificate to a consumer workload and neutralizes Istio or Linkerd
sidecar injection that would bypass the proxy.
"""

from kubemitm.version import __version__


__all__ = ["__version__"]
