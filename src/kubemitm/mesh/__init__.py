"""kubemitm mesh package.

Service mesh detection and sidecar-injection remediation.
"""

from kubemitm.mesh.detector import MeshDetector, ServiceMeshKind, classify_mesh
from kubemitm.mesh.reconciler import MeshPolicyReconciler, MeshPolicySet


__all__ = [
    "MeshDetector",
    "MeshPolicyReconciler",
    "MeshPolicySet",
    "ServiceMeshKind",
    "classify_mesh",
]
