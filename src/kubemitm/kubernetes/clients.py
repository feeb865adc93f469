"""Kubernetes API clients with retry and apply semantics.

Every control-plane call goes through ``ControlPlane.call``: the blocking
client method runs in a worker thread, gets a request timeout, and is
retried with exponential backoff on transient failures. Creation conflicts
are turned into explicit ``ApplyOutcome`` values instead of errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from kubemitm.config.settings import KubernetesSettings
from kubemitm.observability.logging import get_logger
from kubemitm.observability.metrics import control_plane_retries_total


log = get_logger(__name__)

# HTTP Status codes
HTTP_CONFLICT = 409
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class ApplyOutcome(str, Enum):
    """What an idempotent provisioning call did to the cluster."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class ClusterClients:
    """API clients bound to one kubeconfig context."""

    api_client: client.ApiClient
    core: client.CoreV1Api
    apps: client.AppsV1Api
    rbac: client.RbacAuthorizationV1Api
    networking: client.NetworkingV1Api
    custom: client.CustomObjectsApi

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> ClusterClients:
        return cls(
            api_client=api_client,
            core=client.CoreV1Api(api_client),
            apps=client.AppsV1Api(api_client),
            rbac=client.RbacAuthorizationV1Api(api_client),
            networking=client.NetworkingV1Api(api_client),
            custom=client.CustomObjectsApi(api_client),
        )


def load_cluster_clients(
    settings: KubernetesSettings,
    *,
    context: str | None = None,
) -> ClusterClients:
    """Load kubeconfig into a dedicated ApiClient and build typed clients."""
    config_obj = client.Configuration()
    config.load_kube_config(
        config_file=settings.kubeconfig_path,
        context=context,
        client_configuration=config_obj,
    )
    log.info("k8s_config_loaded", mode="kubeconfig", context=context)
    return ClusterClients.from_api_client(client.ApiClient(config_obj))


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, ApiException):
        return exc.status in RETRYABLE_STATUSES
    return isinstance(exc, ConnectionError | urllib3.exceptions.HTTPError)


class ControlPlane:
    """Retrying, idempotent facade over the Kubernetes API."""

    def __init__(self, clients: ClusterClients, settings: KubernetesSettings) -> None:
        self.clients = clients
        self.timeout = settings.api_timeout
        self.max_retries = settings.max_retries
        self.base_delay = settings.retry_base_delay

    @property
    def core(self) -> client.CoreV1Api:
        return self.clients.core

    @property
    def apps(self) -> client.AppsV1Api:
        return self.clients.apps

    @property
    def rbac(self) -> client.RbacAuthorizationV1Api:
        return self.clients.rbac

    @property
    def networking(self) -> client.NetworkingV1Api:
        return self.clients.networking

    @property
    def custom(self) -> client.CustomObjectsApi:
        return self.clients.custom

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking client call in a thread, retrying transient failures."""
        kwargs.setdefault("_request_timeout", self.timeout)
        operation = getattr(getattr(func, "func", func), "__name__", "call")

        last_error: Exception = RuntimeError("Max retries exceeded")
        for attempt in range(self.max_retries):
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except (ApiException, ConnectionError, urllib3.exceptions.HTTPError) as e:
                if not _is_transient(e):
                    raise
                last_error = e
                control_plane_retries_total.labels(operation=operation).inc()
                log.warning(
                    "control_plane_transient_error",
                    operation=operation,
                    error=str(e)[:200],
                    attempt=attempt + 1,
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.base_delay * 2**attempt)

        log.error(
            "control_plane_call_failed",
            operation=operation,
            max_retries=self.max_retries,
            last_error=str(last_error)[:200],
        )
        raise last_error

    async def ensure(
        self,
        create: Callable[..., Any],
        *args: Any,
        kind: str,
        name: str,
        **kwargs: Any,
    ) -> ApplyOutcome:
        """Create an object, treating "already exists" as success."""
        try:
            await self.call(create, *args, **kwargs)
        except ApiException as e:
            if e.status != HTTP_CONFLICT:
                raise
            log.info("object_exists", kind=kind, name=name)
            return ApplyOutcome.UNCHANGED
        log.info("object_created", kind=kind, name=name)
        return ApplyOutcome.CREATED

    async def apply(
        self,
        *,
        kind: str,
        name: str,
        create: Callable[[], Any],
        patch: Callable[[], Any],
    ) -> ApplyOutcome:
        """Create an object, overwriting it with a patch when it already exists."""
        try:
            await self.call(create)
        except ApiException as e:
            if e.status != HTTP_CONFLICT:
                raise
            await self.call(patch)
            log.info("object_updated", kind=kind, name=name)
            return ApplyOutcome.UPDATED
        log.info("object_created", kind=kind, name=name)
        return ApplyOutcome.CREATED

    async def exec_in_pod(self, name: str, namespace: str, command: list[str]) -> str:
        """Run a command in a pod through the exec API and return stdout."""
        return await asyncio.to_thread(
            stream,
            self.core.connect_get_namespaced_pod_exec,
            name,
            namespace,
            command=command,
            stderr=False,
            stdin=False,
            stdout=True,
            tty=False,
            _request_timeout=self.timeout,
        )

    def serialize(self, obj: Any) -> Any:
        """Convert client model objects into plain JSON-compatible data."""
        return self.clients.api_client.sanitize_for_serialization(obj)


__all__ = [
    "HTTP_CONFLICT",
    "ApplyOutcome",
    "ClusterClients",
    "ControlPlane",
    "load_cluster_clients",
]
