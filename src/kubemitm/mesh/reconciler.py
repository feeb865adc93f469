"""Neutralize mesh sidecar injection around the interception proxy.

Each branch applies its objects as full overwrites; nothing is diffed
against what a previous run left behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Any, assert_never, cast

import yaml
from kubernetes import client

from kubemitm.config.settings import ProxySettings
from kubemitm.errors import CommandFailed, DeploymentNotFound, UnknownMesh
from kubemitm.kubernetes.clients import ControlPlane
from kubemitm.kubernetes.commands import CommandRunner
from kubemitm.mesh.detector import (
    DISABLED,
    ISTIO_INJECTION_LABEL,
    LINKERD_INJECT_ANNOTATION,
    ServiceMeshKind,
)
from kubemitm.observability.logging import get_logger
from kubemitm.provisioning import manifests
from kubemitm.provisioning.proxy import ProxyDeployment


log = get_logger(__name__)

LINKERD_PROXY_CONTAINER = "linkerd-proxy"

# Server-populated fields that must not be sent back in a patch
_READ_ONLY_METADATA = (
    "creationTimestamp",
    "generation",
    "managedFields",
    "resourceVersion",
    "selfLink",
    "uid",
)


@dataclass
class MeshPolicySet:
    """Objects a reconciliation branch applied, as (kind, name) pairs."""

    mesh: ServiceMeshKind
    applied: list[tuple[str, str]] = field(default_factory=list)

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.applied]


class MeshPolicyReconciler:
    """Applies the mesh-specific remediation for a detected mesh kind."""

    def __init__(
        self,
        control_plane: ControlPlane,
        runner: CommandRunner,
        settings: ProxySettings,
    ) -> None:
        self.cp = control_plane
        self.runner = runner
        self.settings = settings

    async def reconcile(
        self,
        kind: ServiceMeshKind,
        namespace: str,
        proxy: ProxyDeployment,
    ) -> MeshPolicySet:
        """Dispatch on the mesh kind.

        Raises:
            UnknownMesh: If the namespace markers could not be classified.
            DeploymentNotFound: If the Linkerd branch finds no proxy Deployment.
        """
        if kind is ServiceMeshKind.ISTIO:
            policy = await self._reconcile_istio(namespace)
        elif kind is ServiceMeshKind.LINKERD:
            policy = await self._reconcile_linkerd(namespace, proxy)
        elif kind is ServiceMeshKind.NONE:
            policy = MeshPolicySet(mesh=kind)
        elif kind is ServiceMeshKind.UNKNOWN:
            raise UnknownMesh(
                f"Namespace {namespace} carries mesh injection markers that could not be "
                "classified; fix or remove them and re-run",
                details={"namespace": namespace},
            )
        else:
            assert_never(kind)

        log.info("mesh_reconciled", mesh=kind.value, applied=policy.kinds())
        return policy

    async def _disable_namespace_injection(
        self,
        namespace: str,
        *,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        body = {"metadata": {"labels": labels or {}, "annotations": annotations or {}}}
        await self.cp.call(self.cp.core.patch_namespace, namespace, body)

    async def _apply_custom(self, group: str, plural: str, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        version = manifests.ISTIO_API_VERSION
        await self.cp.apply(
            kind=body["kind"],
            name=name,
            create=partial(
                self.cp.custom.create_namespaced_custom_object,
                group,
                version,
                namespace,
                plural,
                body,
            ),
            patch=partial(
                self.cp.custom.patch_namespaced_custom_object,
                group,
                version,
                namespace,
                plural,
                name,
                body,
            ),
        )

    async def _reconcile_istio(self, namespace: str) -> MeshPolicySet:
        policy = MeshPolicySet(mesh=ServiceMeshKind.ISTIO)

        await self._disable_namespace_injection(
            namespace, labels={ISTIO_INJECTION_LABEL: DISABLED}
        )
        policy.applied.append(("Namespace", namespace))

        gateway = manifests.istio_gateway(self.settings, namespace)
        virtual_service = manifests.istio_virtual_service(self.settings, namespace)
        authorization = manifests.istio_authorization_policy(self.settings, namespace)

        await self._apply_custom(manifests.ISTIO_NETWORKING_GROUP, "gateways", gateway)
        await self._apply_custom(
            manifests.ISTIO_NETWORKING_GROUP, "virtualservices", virtual_service
        )
        await self._apply_custom(
            manifests.ISTIO_SECURITY_GROUP, "authorizationpolicies", authorization
        )
        for obj in (gateway, virtual_service, authorization):
            policy.applied.append((obj["kind"], obj["metadata"]["name"]))
        return policy

    async def _reconcile_linkerd(self, namespace: str, proxy: ProxyDeployment) -> MeshPolicySet:
        policy = MeshPolicySet(mesh=ServiceMeshKind.LINKERD)

        await self._disable_namespace_injection(
            namespace, annotations={LINKERD_INJECT_ANNOTATION: DISABLED}
        )
        policy.applied.append(("Namespace", namespace))

        deployments = cast(
            client.V1DeploymentList,
            await self.cp.call(
                self.cp.apps.list_namespaced_deployment,
                namespace,
                label_selector=proxy.label_selector,
            ),
        )
        if not deployments.items:
            raise DeploymentNotFound(
                f"No Deployment matching {proxy.label_selector} in {namespace}",
                details={"namespace": namespace, "selector": proxy.label_selector},
            )

        for deployment in deployments.items:
            name = deployment.metadata.name
            injected = await self.inject(self.cp.serialize(deployment))
            await self.cp.call(self.cp.apps.patch_namespaced_deployment, name, namespace, injected)
            log.info("linkerd_sidecar_injected", deployment=name, namespace=namespace)
            policy.applied.append(("Deployment", name))
        return policy

    async def inject(self, deployment: dict[str, Any]) -> dict[str, Any]:
        """Pass a Deployment through ``linkerd inject --manual``.

        Raises:
            CommandFailed: If linkerd fails or its output has no proxy container.
        """
        body = dict(deployment)
        body.pop("status", None)
        metadata = dict(body.get("metadata") or {})
        for key in _READ_ONLY_METADATA:
            metadata.pop(key, None)
        body["metadata"] = metadata
        body.setdefault("apiVersion", "apps/v1")
        body.setdefault("kind", "Deployment")

        result = await self.runner.check(
            ["linkerd", "inject", "--manual", "-"],
            input_text=yaml.safe_dump(body, sort_keys=False),
        )
        injected = yaml.safe_load(result.stdout)
        if not isinstance(injected, dict) or injected.get("kind") != "Deployment":
            raise CommandFailed("linkerd inject did not return a Deployment")

        containers = (
            injected.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
        )
        if not any(c.get("name") == LINKERD_PROXY_CONTAINER for c in containers):
            raise CommandFailed(
                f"linkerd inject output has no {LINKERD_PROXY_CONTAINER} container",
                details={"deployment": metadata.get("name")},
            )
        return injected


__all__ = ["MeshPolicyReconciler", "MeshPolicySet"]
