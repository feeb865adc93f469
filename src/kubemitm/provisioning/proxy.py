"""Interception proxy workload and its cluster-internal service."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from functools import partial
from typing import cast

from kubernetes import client

from kubemitm.config.settings import ProxySettings
from kubemitm.errors import ProvisioningError
from kubemitm.kubernetes.clients import ControlPlane
from kubemitm.observability.logging import get_logger
from kubemitm.provisioning import manifests


log = get_logger(__name__)

ROLLOUT_POLL_INTERVAL_SECONDS = 5


@dataclass(frozen=True)
class ProxyDeployment:
    """The running proxy and its stable service address."""

    namespace: str
    deployment_name: str
    service_name: str
    port: int
    app_label: str

    @property
    def endpoint(self) -> str:
        return f"{self.service_name}.{self.namespace}:{self.port}"

    @property
    def proxy_url(self) -> str:
        return f"http://{self.endpoint}/"

    @property
    def label_selector(self) -> str:
        return f"app={self.app_label}"


def rollout_complete(deployment: client.V1Deployment) -> bool:
    """Whether every replica runs the current template and no old pod remains."""
    spec, status = deployment.spec, deployment.status
    if status is None:
        return False
    desired = spec.replicas if spec is not None and spec.replicas is not None else 1
    generation = deployment.metadata.generation if deployment.metadata else None
    if (status.observed_generation or 0) < (generation or 0):
        return False
    return (
        (status.updated_replicas or 0) >= desired
        and (status.available_replicas or 0) >= desired
        and (status.replicas or 0) <= desired
    )


class ProxyDeployer:
    """Applies the mitmproxy Deployment and Service."""

    def __init__(self, control_plane: ControlPlane, settings: ProxySettings) -> None:
        self.cp = control_plane
        self.settings = settings

    async def deploy_proxy(self, namespace: str, service_account_name: str) -> ProxyDeployment:
        """Apply the proxy objects, overwriting any previous version."""
        proxy = self.settings
        deployment = manifests.proxy_deployment(proxy, namespace, service_account_name)
        service = manifests.proxy_service(proxy, namespace)

        await self.cp.apply(
            kind="Deployment",
            name=proxy.deployment_name,
            create=partial(self.cp.apps.create_namespaced_deployment, namespace, deployment),
            patch=partial(
                self.cp.apps.patch_namespaced_deployment,
                proxy.deployment_name,
                namespace,
                deployment,
            ),
        )
        await self.cp.apply(
            kind="Service",
            name=proxy.service_name,
            create=partial(self.cp.core.create_namespaced_service, namespace, service),
            patch=partial(
                self.cp.core.patch_namespaced_service,
                proxy.service_name,
                namespace,
                service,
            ),
        )

        deployed = ProxyDeployment(
            namespace=namespace,
            deployment_name=proxy.deployment_name,
            service_name=proxy.service_name,
            port=proxy.port,
            app_label=proxy.app_label,
        )
        log.info("proxy_deployed", endpoint=deployed.endpoint)
        return deployed

    async def wait_until_ready(self, proxy: ProxyDeployment, timeout_seconds: int) -> None:
        """Wait until the latest template is fully rolled out and available.

        Pods of a superseded template still count as available while they
        drain, so availability alone does not mean the newest pod serves.

        Raises:
            ProvisioningError: If the Deployment is not available in time.
        """
        start = time.monotonic()
        while time.monotonic() - start < timeout_seconds:
            deployment = cast(
                client.V1Deployment,
                await self.cp.call(
                    self.cp.apps.read_namespaced_deployment,
                    proxy.deployment_name,
                    proxy.namespace,
                ),
            )
            if rollout_complete(deployment):
                log.info(
                    "proxy_ready",
                    deployment=proxy.deployment_name,
                    updated=deployment.status.updated_replicas,
                )
                return
            await asyncio.sleep(ROLLOUT_POLL_INTERVAL_SECONDS)

        raise ProvisioningError(
            f"Deployment {proxy.deployment_name} not available after {timeout_seconds}s",
            code="proxy_rollout_timeout",
            retryable=True,
            details={"namespace": proxy.namespace},
        )


__all__ = ["ProxyDeployer", "ProxyDeployment", "rollout_complete"]
