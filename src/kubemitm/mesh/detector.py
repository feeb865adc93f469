"""Classify the service mesh that would inject sidecars into a namespace."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import cast

from kubernetes import client

from kubemitm.kubernetes.clients import ControlPlane
from kubemitm.observability.logging import get_logger


log = get_logger(__name__)

ISTIO_INJECTION_LABEL = "istio-injection"
ISTIO_REVISION_LABEL = "istio.io/rev"
LINKERD_INJECT_ANNOTATION = "linkerd.io/inject"

ENABLED = "enabled"
DISABLED = "disabled"
# linkerd's injector also accepts "ingress" mode
LINKERD_ENABLED_VALUES = frozenset({ENABLED, "ingress"})


class ServiceMeshKind(str, Enum):
    """Mesh whose injector is active for a namespace."""

    ISTIO = "istio"
    LINKERD = "linkerd"
    NONE = "none"
    UNKNOWN = "unknown"


class _Marker(Enum):
    ABSENT = "absent"
    ENABLED = "enabled"
    DISABLED = "disabled"
    MALFORMED = "malformed"


def _istio_marker(labels: Mapping[str, str]) -> _Marker:
    value = labels.get(ISTIO_INJECTION_LABEL)
    if value is not None:
        value = value.strip().lower()
        if value == ENABLED:
            return _Marker.ENABLED
        if value == DISABLED:
            return _Marker.DISABLED
        return _Marker.MALFORMED
    # Revision-based injection; the istio-injection label takes precedence when both exist
    if labels.get(ISTIO_REVISION_LABEL, "").strip():
        return _Marker.ENABLED
    return _Marker.ABSENT


def _linkerd_marker(annotations: Mapping[str, str]) -> _Marker:
    value = annotations.get(LINKERD_INJECT_ANNOTATION)
    if value is None:
        return _Marker.ABSENT
    value = value.strip().lower()
    if value in LINKERD_ENABLED_VALUES:
        return _Marker.ENABLED
    if value == DISABLED:
        return _Marker.DISABLED
    return _Marker.MALFORMED


def classify_mesh(
    labels: Mapping[str, str] | None,
    annotations: Mapping[str, str] | None,
) -> ServiceMeshKind:
    """Classify namespace metadata.

    Istio wins over Linkerd when both injectors are enabled. A marker with a
    value neither injector understands yields UNKNOWN unless the other mesh
    is unambiguously enabled.
    """
    istio = _istio_marker(labels or {})
    linkerd = _linkerd_marker(annotations or {})

    if istio is _Marker.ENABLED:
        if linkerd is _Marker.ENABLED:
            log.warning("mesh_markers_conflict", chosen=ServiceMeshKind.ISTIO.value)
        return ServiceMeshKind.ISTIO
    if linkerd is _Marker.ENABLED:
        return ServiceMeshKind.LINKERD
    if _Marker.MALFORMED in (istio, linkerd):
        return ServiceMeshKind.UNKNOWN
    return ServiceMeshKind.NONE


class MeshDetector:
    """Reads live namespace metadata and classifies its mesh."""

    def __init__(self, control_plane: ControlPlane) -> None:
        self.cp = control_plane

    async def detect(self, namespace: str) -> ServiceMeshKind:
        ns = cast(client.V1Namespace, await self.cp.call(self.cp.core.read_namespace, namespace))
        metadata = ns.metadata or client.V1ObjectMeta()
        kind = classify_mesh(metadata.labels, metadata.annotations)
        log.info("mesh_detected", namespace=namespace, mesh=kind.value)
        return kind


__all__ = [
    "ISTIO_INJECTION_LABEL",
    "ISTIO_REVISION_LABEL",
    "LINKERD_INJECT_ANNOTATION",
    "MeshDetector",
    "ServiceMeshKind",
    "classify_mesh",
]
