"""kubemitm provisioning package.

Cluster context, identity, namespace, proxy and trust provisioning steps.
"""

from kubemitm.provisioning.context import ClusterContext, ClusterContextResolver
from kubemitm.provisioning.identity import IdentityProvisioner, ServiceIdentity
from kubemitm.provisioning.namespace import NamespaceBootstrapper
from kubemitm.provisioning.proxy import ProxyDeployer, ProxyDeployment
from kubemitm.provisioning.trust import TrustBundle, TrustPropagator


__all__ = [
    "ClusterContext",
    "ClusterContextResolver",
    "IdentityProvisioner",
    "NamespaceBootstrapper",
    "ProxyDeployer",
    "ProxyDeployment",
    "ServiceIdentity",
    "TrustBundle",
    "TrustPropagator",
]
