"""Namespace bootstrap: namespace, service account, admin binding, network policy."""

from __future__ import annotations

from functools import partial
from typing import cast

from kubernetes import client

from kubemitm.kubernetes.clients import ApplyOutcome, ControlPlane
from kubemitm.provisioning import manifests
from kubemitm.provisioning.identity import ServiceIdentity


class NamespaceBootstrapper:
    """Prepares the target namespace for the proxy."""

    def __init__(self, control_plane: ControlPlane) -> None:
        self.cp = control_plane

    async def ensure_namespace(self, name: str) -> client.V1Namespace:
        """Create the namespace if missing and return it as the cluster holds it.

        An existing namespace is left untouched, mesh markers included.
        """
        await self.cp.ensure(
            self.cp.core.create_namespace,
            manifests.namespace(name),
            kind="Namespace",
            name=name,
        )
        return cast(client.V1Namespace, await self.cp.call(self.cp.core.read_namespace, name))

    async def ensure_service_account(
        self,
        namespace: str,
        identity: ServiceIdentity,
    ) -> ApplyOutcome:
        """Kubernetes ServiceAccount mapped to the IAM identity via Workload Identity."""
        body = manifests.service_account(identity.name, namespace, identity.email)
        return await self.cp.apply(
            kind="ServiceAccount",
            name=identity.name,
            create=partial(self.cp.core.create_namespaced_service_account, namespace, body),
            patch=partial(
                self.cp.core.patch_namespaced_service_account, identity.name, namespace, body
            ),
        )

    async def ensure_admin_binding(self, namespace: str, identity: ServiceIdentity) -> ApplyOutcome:
        body = manifests.admin_role_binding(namespace, identity.name)
        return await self.cp.apply(
            kind="RoleBinding",
            name=manifests.ADMIN_BINDING_NAME,
            create=partial(self.cp.rbac.create_namespaced_role_binding, namespace, body),
            patch=partial(
                self.cp.rbac.patch_namespaced_role_binding,
                manifests.ADMIN_BINDING_NAME,
                namespace,
                body,
            ),
        )

    async def apply_permissive_network_policy(self, namespace: str) -> ApplyOutcome:
        """Install the allow-all baseline.

        Some network plugins switch a namespace to default-deny as soon as any
        policy exists, so the open policy must be in place before anything
        narrower is layered on.
        """
        body = manifests.allow_all_network_policy(namespace)
        return await self.cp.apply(
            kind="NetworkPolicy",
            name=manifests.NETWORK_POLICY_NAME,
            create=partial(self.cp.networking.create_namespaced_network_policy, namespace, body),
            patch=partial(
                self.cp.networking.patch_namespaced_network_policy,
                manifests.NETWORK_POLICY_NAME,
                namespace,
                body,
            ),
        )


__all__ = ["NamespaceBootstrapper"]
