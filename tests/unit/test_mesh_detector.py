"""Unit tests for mesh classification."""

from __future__ import annotations

import pytest

from kubemitm.kubernetes.clients import ControlPlane
from kubemitm.mesh.detector import MeshDetector, ServiceMeshKind, classify_mesh


@pytest.mark.parametrize(
    ("labels", "annotations", "expected"),
    [
        ({}, {}, ServiceMeshKind.NONE),
        (None, None, ServiceMeshKind.NONE),
        ({"istio-injection": "enabled"}, {}, ServiceMeshKind.ISTIO),
        ({"istio-injection": " Enabled "}, {}, ServiceMeshKind.ISTIO),
        ({"istio.io/rev": "asm-1-20"}, {}, ServiceMeshKind.ISTIO),
        ({"istio-injection": "disabled", "istio.io/rev": "asm-1-20"}, {}, ServiceMeshKind.NONE),
        ({"istio-injection": "disabled"}, {}, ServiceMeshKind.NONE),
        ({}, {"linkerd.io/inject": "enabled"}, ServiceMeshKind.LINKERD),
        ({}, {"linkerd.io/inject": "ingress"}, ServiceMeshKind.LINKERD),
        ({}, {"linkerd.io/inject": "disabled"}, ServiceMeshKind.NONE),
        (
            {"istio-injection": "enabled"},
            {"linkerd.io/inject": "enabled"},
            ServiceMeshKind.ISTIO,
        ),
        ({"istio-injection": "yes"}, {}, ServiceMeshKind.UNKNOWN),
        ({}, {"linkerd.io/inject": "true"}, ServiceMeshKind.UNKNOWN),
        ({"istio-injection": "yes"}, {"linkerd.io/inject": "enabled"}, ServiceMeshKind.LINKERD),
        ({"app": "web"}, {"linkerd.io/proxy-version": "stable"}, ServiceMeshKind.NONE),
    ],
)
def test_classify_mesh(
    labels: dict[str, str] | None,
    annotations: dict[str, str] | None,
    expected: ServiceMeshKind,
) -> None:
    assert classify_mesh(labels, annotations) is expected


class TestMeshDetector:
    """Tests for live namespace detection."""

    @pytest.mark.asyncio
    async def test_detect_reads_namespace(self, fake_cluster, control_plane: ControlPlane) -> None:
        fake_cluster.preset_namespace("mitmproxy", annotations={"linkerd.io/inject": "enabled"})

        assert await MeshDetector(control_plane).detect("mitmproxy") is ServiceMeshKind.LINKERD

    @pytest.mark.asyncio
    async def test_detect_plain_namespace(self, fake_cluster, control_plane: ControlPlane) -> None:
        fake_cluster.preset_namespace("mitmproxy")

        assert await MeshDetector(control_plane).detect("mitmproxy") is ServiceMeshKind.NONE
