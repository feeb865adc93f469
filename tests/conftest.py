"""Pytest configuration and fixtures for kubemitm tests."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubemitm.config.settings import (
    IdentitySettings,
    KubernetesSettings,
    ProxySettings,
    Settings,
)
from kubemitm.kubernetes.clients import ClusterClients, ControlPlane
from kubemitm.kubernetes.commands import CommandResult, CommandRunner
from kubemitm.provisioning.context import ClusterContext

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


os.environ.setdefault("KUBEMITM_OBSERVABILITY_LOG_FORMAT", "console")


SAMPLE_PEM = (
    "-----BEGIN CERTIFICATE-----\n"
    "MIIDNTCCAh2gAwIBAgIUKubeMitmTestCertificateAAAAAAAAAwDQYJKoZIhvcN\n"
    "AQELBQAwKDESMBAGA1UEAwwJbWl0bXByb3h5MRIwEAYDVQQKDAltaXRtcHJveHkw\n"
    "-----END CERTIFICATE-----\n"
)


def _name_of(body: Any) -> str:
    if isinstance(body, dict):
        return body["metadata"]["name"]
    return body.metadata.name


def _labels_of(body: Any) -> dict[str, str]:
    if isinstance(body, dict):
        return dict(body.get("metadata", {}).get("labels") or {})
    return dict(body.metadata.labels or {})


def _template_labels(body: Any) -> dict[str, str]:
    if isinstance(body, dict):
        template = body.get("spec", {}).get("template", {})
        return dict(template.get("metadata", {}).get("labels") or {})
    return dict(body.spec.template.metadata.labels or {})


def _selector(label_selector: str) -> dict[str, str]:
    return dict(part.split("=", 1) for part in label_selector.split(",") if part)


def _conflict() -> ApiException:
    return ApiException(status=409, reason="AlreadyExists")


def _not_found() -> ApiException:
    return ApiException(status=404, reason="NotFound")


class FakeCluster:
    """In-memory control plane behind MagicMock API clients.

    Creates raise 409 for existing objects, patches overwrite, and every
    mutating call is appended to ``mutations``. Each Deployment write starts
    a new rollout revision backed by its own ReplicaSet.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], Any] = {}
        self.namespaces: dict[str, dict[str, dict[str, str]]] = {}
        self.mutations: list[str] = []
        self.revisions: dict[tuple[str, str], int] = {}
        self.pod_ready = True

        self.core = MagicMock(name="CoreV1Api")
        self.apps = MagicMock(name="AppsV1Api")
        self.rbac = MagicMock(name="RbacAuthorizationV1Api")
        self.networking = MagicMock(name="NetworkingV1Api")
        self.custom = MagicMock(name="CustomObjectsApi")
        self._wire()

    # -- setup helpers -------------------------------------------------

    def preset_namespace(
        self,
        name: str,
        *,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        self.namespaces[name] = {
            "labels": dict(labels or {}),
            "annotations": dict(annotations or {}),
        }

    def clients(self) -> ClusterClients:
        return ClusterClients(
            api_client=client.ApiClient(),
            core=self.core,
            apps=self.apps,
            rbac=self.rbac,
            networking=self.networking,
            custom=self.custom,
        )

    def get(self, kind: str, namespace: str, name: str) -> Any:
        return self.objects.get((kind, namespace, name))

    def of_kind(self, kind: str) -> list[Any]:
        return [obj for (k, _, _), obj in self.objects.items() if k == kind]

    def template_hash(self, namespace: str, name: str) -> str:
        """Pod template hash of the Deployment's current ReplicaSet."""
        return f"7d4b9c{self.revisions[(namespace, name)]}"

    def pod_name(self, namespace: str, name: str) -> str:
        return f"{name}-{self.template_hash(namespace, name)}-xk2lp"

    # -- wiring --------------------------------------------------------

    def _mutating(self, op: str, fn: Any) -> MagicMock:
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.mutations.append(op)
            return fn(*args, **kwargs)

        return MagicMock(side_effect=wrapper)

    def _wire(self) -> None:
        self.core.create_namespace = self._mutating("create_namespace", self._create_namespace)
        self.core.patch_namespace = self._mutating("patch_namespace", self._patch_namespace)
        self.core.read_namespace = MagicMock(side_effect=self._read_namespace)

        namespaced = [
            (self.core, "service_account", "ServiceAccount"),
            (self.core, "service", "Service"),
            (self.core, "secret", "Secret"),
            (self.rbac, "role_binding", "RoleBinding"),
            (self.networking, "network_policy", "NetworkPolicy"),
            (self.apps, "deployment", "Deployment"),
        ]
        for api, suffix, kind in namespaced:
            setattr(
                api,
                f"create_namespaced_{suffix}",
                self._mutating(f"create_{suffix}", self._creator(kind)),
            )
            setattr(
                api,
                f"patch_namespaced_{suffix}",
                self._mutating(f"patch_{suffix}", self._patcher(kind)),
            )

        self.custom.create_namespaced_custom_object = self._mutating(
            "create_custom_object", self._create_custom
        )
        self.custom.patch_namespaced_custom_object = self._mutating(
            "patch_custom_object", self._patch_custom
        )

        self.apps.read_namespaced_deployment = MagicMock(side_effect=self._read_deployment)
        self.apps.list_namespaced_deployment = MagicMock(side_effect=self._list_deployments)
        self.apps.list_namespaced_replica_set = MagicMock(side_effect=self._list_replica_sets)
        self.core.list_namespaced_pod = MagicMock(side_effect=self._list_pods)

    def _create_namespace(self, body: client.V1Namespace, **_: Any) -> client.V1Namespace:
        name = body.metadata.name
        if name in self.namespaces:
            raise _conflict()
        self.preset_namespace(
            name,
            labels=body.metadata.labels,
            annotations=body.metadata.annotations,
        )
        return body

    def _patch_namespace(self, name: str, body: dict[str, Any], **_: Any) -> None:
        if name not in self.namespaces:
            raise _not_found()
        metadata = body.get("metadata", {})
        self.namespaces[name]["labels"].update(metadata.get("labels") or {})
        self.namespaces[name]["annotations"].update(metadata.get("annotations") or {})

    def _read_namespace(self, name: str, **_: Any) -> client.V1Namespace:
        if name not in self.namespaces:
            raise _not_found()
        meta = self.namespaces[name]
        return client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=name,
                labels=dict(meta["labels"]),
                annotations=dict(meta["annotations"]),
            )
        )

    def _creator(self, kind: str) -> Any:
        def create(namespace: str, body: Any, **_: Any) -> Any:
            key = (kind, namespace, _name_of(body))
            if key in self.objects:
                raise _conflict()
            self.objects[key] = body
            self._record_rollout(kind, namespace, key[2])
            return body

        return create

    def _patcher(self, kind: str) -> Any:
        def patch_(name: str, namespace: str, body: Any, **_: Any) -> Any:
            key = (kind, namespace, name)
            if key not in self.objects:
                raise _not_found()
            self.objects[key] = body
            self._record_rollout(kind, namespace, name)
            return body

        return patch_

    def _record_rollout(self, kind: str, namespace: str, name: str) -> None:
        if kind == "Deployment":
            self.revisions[(namespace, name)] = self.revisions.get((namespace, name), 0) + 1

    def _create_custom(
        self, group: str, version: str, namespace: str, plural: str, body: dict[str, Any], **_: Any
    ) -> dict[str, Any]:
        key = (body["kind"], namespace, _name_of(body))
        if key in self.objects:
            raise _conflict()
        self.objects[key] = body
        return body

    def _patch_custom(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
        **_: Any,
    ) -> dict[str, Any]:
        key = (body["kind"], namespace, name)
        if key not in self.objects:
            raise _not_found()
        self.objects[key] = body
        return body

    def _revision_meta(self, namespace: str, name: str) -> dict[str, str]:
        return {"deployment.kubernetes.io/revision": str(self.revisions[(namespace, name)])}

    def _read_deployment(self, name: str, namespace: str, **_: Any) -> client.V1Deployment:
        if ("Deployment", namespace, name) not in self.objects:
            raise _not_found()
        revision = self.revisions[(namespace, name)]
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                generation=revision,
                annotations=self._revision_meta(namespace, name),
            ),
            spec=client.V1DeploymentSpec(
                replicas=1,
                selector=client.V1LabelSelector(match_labels={"app": name}),
                template=client.V1PodTemplateSpec(),
            ),
            status=client.V1DeploymentStatus(
                observed_generation=revision,
                replicas=1,
                updated_replicas=1,
                available_replicas=1 if self.pod_ready else 0,
            ),
        )

    def _deployments_in(self, namespace: str, label_selector: str) -> list[tuple[str, Any]]:
        wanted = _selector(label_selector)
        matched = []
        for (kind, ns, name), body in self.objects.items():
            if kind != "Deployment" or ns != namespace:
                continue
            labels = _template_labels(body)
            if all(labels.get(k) == v for k, v in wanted.items() if k != "pod-template-hash"):
                matched.append((name, body))
        return matched

    def _list_deployments(
        self, namespace: str, label_selector: str = "", **_: Any
    ) -> client.V1DeploymentList:
        wanted = _selector(label_selector)
        items = []
        for (kind, ns, _name), body in self.objects.items():
            if kind != "Deployment" or ns != namespace:
                continue
            labels = _labels_of(body)
            if isinstance(body, client.V1Deployment) and all(
                labels.get(k) == v for k, v in wanted.items()
            ):
                items.append(body)
        return client.V1DeploymentList(items=items)

    def _list_replica_sets(
        self, namespace: str, label_selector: str = "", **_: Any
    ) -> client.V1ReplicaSetList:
        items = []
        for name, body in self._deployments_in(namespace, label_selector):
            template_hash = self.template_hash(namespace, name)
            items.append(
                client.V1ReplicaSet(
                    metadata=client.V1ObjectMeta(
                        name=f"{name}-{template_hash}",
                        namespace=namespace,
                        labels={**_template_labels(body), "pod-template-hash": template_hash},
                        annotations=self._revision_meta(namespace, name),
                        owner_references=[
                            client.V1OwnerReference(
                                api_version="apps/v1",
                                kind="Deployment",
                                name=name,
                                uid=f"uid-{name}",
                            )
                        ],
                    ),
                )
            )
        return client.V1ReplicaSetList(items=items)

    def _list_pods(self, namespace: str, label_selector: str = "", **_: Any) -> client.V1PodList:
        if not self.pod_ready:
            return client.V1PodList(items=[])
        wanted = _selector(label_selector)
        items = []
        for name, body in self._deployments_in(namespace, label_selector):
            template_hash = self.template_hash(namespace, name)
            if wanted.get("pod-template-hash", template_hash) != template_hash:
                continue
            items.append(
                client.V1Pod(
                    metadata=client.V1ObjectMeta(
                        name=self.pod_name(namespace, name),
                        namespace=namespace,
                        labels={**_template_labels(body), "pod-template-hash": template_hash},
                    ),
                    status=client.V1PodStatus(
                        phase="Running",
                        container_statuses=[
                            client.V1ContainerStatus(
                                name=name,
                                image="mitmproxy/mitmproxy:latest",
                                image_id="",
                                ready=True,
                                restart_count=0,
                            )
                        ],
                    ),
                )
            )
        return client.V1PodList(items=items)



def _inject_linkerd(manifest: str) -> str:
    doc = yaml.safe_load(manifest)
    pod_spec = doc["spec"]["template"]["spec"]
    pod_spec["containers"] = [
        *pod_spec.get("containers", []),
        {"name": "linkerd-proxy", "image": "cr.l5d.io/linkerd/proxy:stable"},
    ]
    doc["spec"]["template"].setdefault("metadata", {}).setdefault("annotations", {})[
        "linkerd.io/inject"
    ] = "enabled"
    return yaml.safe_dump(doc)


async def _fake_run(args: list[str], *, input_text: str | None = None) -> CommandResult:
    if args[:4] == ["gcloud", "config", "get-value", "project"]:
        return CommandResult(stdout="my-project", stderr="", returncode=0)
    if args[:2] == ["linkerd", "inject"]:
        return CommandResult(stdout=_inject_linkerd(input_text or ""), stderr="", returncode=0)
    return CommandResult(stdout="", stderr="", returncode=0)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from kubemitm.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def restore_root_logger() -> Generator[None, None, None]:
    """Drop handlers installed by configure_logging during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        kubernetes=KubernetesSettings(max_retries=3, retry_base_delay=0.0),
        identity=IdentitySettings(max_retries=3, retry_base_delay=0.0),
        proxy=ProxySettings(
            ready_timeout_seconds=1,
            trust_timeout_seconds=1,
            trust_poll_interval=0.05,
            ca_output_path=str(tmp_path / "mitmproxy-ca.pem"),
        ),
    )


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def control_plane(fake_cluster: FakeCluster, settings: Settings) -> ControlPlane:
    return ControlPlane(fake_cluster.clients(), settings.kubernetes)


@pytest.fixture
def runner() -> MagicMock:
    """CommandRunner double answering gcloud and linkerd invocations."""
    mock = MagicMock(spec=CommandRunner)
    mock.run = AsyncMock(side_effect=_fake_run)
    mock.check = AsyncMock(side_effect=_fake_run)
    return mock


@pytest.fixture
def cluster_context() -> ClusterContext:
    return ClusterContext(
        project_id="my-project",
        cluster_name="my-cluster",
        cluster_location="us-central1-a",
        kube_context="gke_my-project_us-central1-a_my-cluster",
    )


@pytest.fixture
def pod_exec() -> Generator[MagicMock, None, None]:
    """Patch the pod exec stream to return the proxy CA."""
    with patch("kubemitm.kubernetes.clients.stream", return_value=SAMPLE_PEM) as mock_stream:
        yield mock_stream


@pytest.fixture
def sample_pem() -> str:
    return SAMPLE_PEM
