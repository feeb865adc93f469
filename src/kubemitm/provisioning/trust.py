"""Propagate the proxy's CA certificate to consumer workloads.

mitmproxy generates its CA on first start, so extraction races the proxy
pod's startup and is polled with backoff until a deadline. Every new pod
gets a fresh CA, so only pods of the latest ReplicaSet are read.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import cast

from kubernetes import client
from kubernetes.client.rest import ApiException

from kubemitm.config.settings import ProxySettings
from kubemitm.errors import TrustExtractionFailed
from kubemitm.kubernetes.clients import ApplyOutcome, ControlPlane
from kubemitm.observability.logging import get_logger
from kubemitm.observability.metrics import trust_extraction_attempts_total
from kubemitm.provisioning import manifests
from kubemitm.provisioning.proxy import ProxyDeployment


log = get_logger(__name__)

PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"
MAX_POLL_DELAY_SECONDS = 30.0
REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"


@dataclass(frozen=True)
class TrustBundle:
    """PEM-encoded CA certificate read from a proxy pod."""

    pem: bytes
    source_pod: str


class _NotReady(Exception):
    """The proxy cannot serve its CA yet."""


def _is_pod_ready(pod: client.V1Pod) -> bool:
    status = pod.status
    if status is None or status.phase != "Running":
        return False
    statuses = status.container_statuses or []
    return bool(statuses) and all(cs.ready for cs in statuses)


def _owned_by(replica_set: client.V1ReplicaSet, deployment_name: str) -> bool:
    refs = replica_set.metadata.owner_references or []
    return any(ref.kind == "Deployment" and ref.name == deployment_name for ref in refs)


def extract_pem(output: str) -> bytes | None:
    """Return the first PEM certificate block in ``output``."""
    start = output.find(PEM_BEGIN)
    end = output.find(PEM_END, start)
    if start == -1 or end == -1:
        return None
    return (output[start : end + len(PEM_END)] + "\n").encode("ascii")


class TrustPropagator:
    """Extracts, stores and distributes the proxy CA."""

    def __init__(self, control_plane: ControlPlane, settings: ProxySettings) -> None:
        self.cp = control_plane
        self.settings = settings

    async def extract_trust_bundle(self, proxy: ProxyDeployment) -> TrustBundle:
        """Read the CA certificate from a ready pod of the current rollout.

        Pods of older ReplicaSets and pods already terminating are ignored,
        since a later rollout regenerates the CA in its new pod.

        Raises:
            TrustExtractionFailed: If no certificate could be read before
                ``trust_timeout_seconds`` elapsed.
        """
        timeout = self.settings.trust_timeout_seconds
        deadline = time.monotonic() + timeout
        delay = self.settings.trust_poll_interval
        attempt = 0
        last_reason = "no attempt made"

        while True:
            attempt += 1
            try:
                bundle = await self._try_extract(proxy)
            except _NotReady as e:
                last_reason = str(e)
                trust_extraction_attempts_total.labels(result="not_ready").inc()
                log.debug("trust_extraction_pending", attempt=attempt, reason=last_reason)
            else:
                trust_extraction_attempts_total.labels(result="success").inc()
                log.info("trust_bundle_extracted", pod=bundle.source_pod, attempt=attempt)
                return bundle

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_POLL_DELAY_SECONDS)

        trust_extraction_attempts_total.labels(result="timeout").inc()
        raise TrustExtractionFailed(
            f"CA certificate not available from {proxy.label_selector} pods "
            f"after {timeout}s: {last_reason}",
            retryable=True,
            details={"attempts": attempt, "namespace": proxy.namespace},
        )

    async def _current_template_hash(self, proxy: ProxyDeployment) -> str:
        """Pod template hash of the ReplicaSet behind the Deployment's latest revision."""
        deployment = cast(
            client.V1Deployment,
            await self.cp.call(
                self.cp.apps.read_namespaced_deployment,
                proxy.deployment_name,
                proxy.namespace,
            ),
        )
        revision = (deployment.metadata.annotations or {}).get(REVISION_ANNOTATION)
        if revision is None:
            raise _NotReady(f"{proxy.deployment_name} has no rollout revision yet")

        replica_sets = cast(
            client.V1ReplicaSetList,
            await self.cp.call(
                self.cp.apps.list_namespaced_replica_set,
                proxy.namespace,
                label_selector=proxy.label_selector,
            ),
        )
        for rs in replica_sets.items:
            meta = rs.metadata
            if (meta.annotations or {}).get(REVISION_ANNOTATION) != revision:
                continue
            if not _owned_by(rs, proxy.deployment_name):
                continue
            template_hash = (meta.labels or {}).get(POD_TEMPLATE_HASH_LABEL)
            if template_hash:
                return template_hash
        raise _NotReady(f"no ReplicaSet for revision {revision} of {proxy.deployment_name}")

    async def _try_extract(self, proxy: ProxyDeployment) -> TrustBundle:
        template_hash = await self._current_template_hash(proxy)
        selector = f"{proxy.label_selector},{POD_TEMPLATE_HASH_LABEL}={template_hash}"
        pods = cast(
            client.V1PodList,
            await self.cp.call(
                self.cp.core.list_namespaced_pod,
                proxy.namespace,
                label_selector=selector,
            ),
        )
        ready = sorted(
            pod.metadata.name
            for pod in pods.items
            if _is_pod_ready(pod)
            and pod.metadata.deletion_timestamp is None
            and (pod.metadata.labels or {}).get(POD_TEMPLATE_HASH_LABEL) == template_hash
        )
        if not ready:
            raise _NotReady(f"no ready proxy pod of template {template_hash}")

        pod_name = ready[0]
        try:
            output = await self.cp.exec_in_pod(
                pod_name,
                proxy.namespace,
                ["cat", self.settings.ca_cert_path],
            )
        except ApiException as e:
            raise _NotReady(f"exec into {pod_name} failed: {e.reason}") from e

        pem = extract_pem(output or "")
        if pem is None:
            raise _NotReady(f"{self.settings.ca_cert_path} not generated yet in {pod_name}")
        return TrustBundle(pem=pem, source_pod=pod_name)

    def write_local_copy(self, bundle: TrustBundle, path: str | Path | None = None) -> Path:
        """Write the CA certificate to a local file for the operator."""
        target = Path(path or self.settings.ca_output_path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(bundle.pem)
        log.info("trust_bundle_written", path=str(target))
        return target

    async def materialize_secret(self, bundle: TrustBundle, namespace: str) -> ApplyOutcome:
        body = manifests.trust_secret(self.settings, namespace, bundle.pem)
        name = self.settings.secret_name
        return await self.cp.apply(
            kind="Secret",
            name=name,
            create=partial(self.cp.core.create_namespaced_secret, namespace, body),
            patch=partial(self.cp.core.patch_namespaced_secret, name, namespace, body),
        )

    async def deploy_trusting_workload(
        self,
        namespace: str,
        proxy: ProxyDeployment,
        bundle: TrustBundle,
    ) -> ApplyOutcome:
        """Apply the consumer Deployment that routes through and trusts the proxy."""
        body = manifests.trusting_deployment(self.settings, namespace, proxy.proxy_url)
        name = self.settings.client_name
        outcome = await self.cp.apply(
            kind="Deployment",
            name=name,
            create=partial(self.cp.apps.create_namespaced_deployment, namespace, body),
            patch=partial(self.cp.apps.patch_namespaced_deployment, name, namespace, body),
        )
        log.info(
            "trusting_workload_deployed",
            deployment=name,
            proxy_url=proxy.proxy_url,
            ca_from=bundle.source_pod,
        )
        return outcome


__all__ = ["TrustBundle", "TrustPropagator", "extract_pem"]
