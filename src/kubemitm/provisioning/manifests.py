"""Typed builders for every object kubemitm applies.

Core resources are built from kubernetes client models; Istio custom
resources are plain dicts for the CustomObjectsApi.
"""

from __future__ import annotations

from typing import Any

from kubernetes import client

from kubemitm.config.settings import ProxySettings


MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "kubemitm"

ADMIN_BINDING_NAME = "mitmproxy-admin-binding"
NETWORK_POLICY_NAME = "allow-all"
GKE_SA_ANNOTATION = "iam.gke.io/gcp-service-account"

TRUST_MOUNT_PATH = "/etc/mitmproxy-ca"
SYSTEM_CA_DIR = "/usr/local/share/ca-certificates"

ISTIO_NETWORKING_GROUP = "networking.istio.io"
ISTIO_SECURITY_GROUP = "security.istio.io"
ISTIO_API_VERSION = "v1beta1"
GATEWAY_NAME = "mitmproxy-gateway"
VIRTUAL_SERVICE_NAME = "mitmproxy-virtualservice"
AUTHORIZATION_POLICY_NAME = "mitmproxy-allow-all"


def _metadata(name: str, namespace: str | None = None, **labels: str) -> client.V1ObjectMeta:
    return client.V1ObjectMeta(
        name=name,
        namespace=namespace,
        labels={MANAGED_BY_LABEL: MANAGED_BY, **labels},
    )


def namespace(name: str) -> client.V1Namespace:
    return client.V1Namespace(metadata=_metadata(name))


def service_account(name: str, namespace_name: str, gcp_email: str) -> client.V1ServiceAccount:
    metadata = _metadata(name, namespace_name)
    metadata.annotations = {GKE_SA_ANNOTATION: gcp_email}
    return client.V1ServiceAccount(metadata=metadata)


def admin_role_binding(namespace_name: str, service_account_name: str) -> client.V1RoleBinding:
    """RoleBinding of the namespace's ServiceAccount to the built-in admin ClusterRole."""
    return client.V1RoleBinding(
        metadata=_metadata(ADMIN_BINDING_NAME, namespace_name),
        role_ref=client.V1RoleRef(
            api_group="rbac.authorization.k8s.io",
            kind="ClusterRole",
            name="admin",
        ),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount",
                name=service_account_name,
                namespace=namespace_name,
            )
        ],
    )


def allow_all_network_policy(namespace_name: str) -> client.V1NetworkPolicy:
    """Default-allow policy: empty pod selector, one empty ingress and egress rule."""
    return client.V1NetworkPolicy(
        metadata=_metadata(NETWORK_POLICY_NAME, namespace_name),
        spec=client.V1NetworkPolicySpec(
            pod_selector=client.V1LabelSelector(),
            policy_types=["Ingress", "Egress"],
            ingress=[client.V1NetworkPolicyIngressRule()],
            egress=[client.V1NetworkPolicyEgressRule()],
        ),
    )


def proxy_deployment(
    proxy: ProxySettings,
    namespace_name: str,
    service_account_name: str,
) -> client.V1Deployment:
    labels = {"app": proxy.app_label}
    container = client.V1Container(
        name="mitmproxy",
        image=proxy.image,
        command=["mitmdump"],
        args=[
            "--listen-host",
            "0.0.0.0",
            "--listen-port",
            str(proxy.port),
            "--set",
            "block_global=false",
        ],
        ports=[client.V1ContainerPort(container_port=proxy.port, name="proxy")],
        readiness_probe=client.V1Probe(
            tcp_socket=client.V1TCPSocketAction(port=proxy.port),
            initial_delay_seconds=2,
            period_seconds=5,
        ),
    )
    return client.V1Deployment(
        metadata=_metadata(proxy.deployment_name, namespace_name, **labels),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    service_account_name=service_account_name,
                    containers=[container],
                ),
            ),
        ),
    )


def proxy_service(proxy: ProxySettings, namespace_name: str) -> client.V1Service:
    return client.V1Service(
        metadata=_metadata(proxy.service_name, namespace_name, app=proxy.app_label),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector={"app": proxy.app_label},
            ports=[
                client.V1ServicePort(
                    name="http-proxy",
                    port=proxy.port,
                    target_port=proxy.port,
                    protocol="TCP",
                )
            ],
        ),
    )


def trust_secret(proxy: ProxySettings, namespace_name: str, pem: bytes) -> client.V1Secret:
    return client.V1Secret(
        metadata=_metadata(proxy.secret_name, namespace_name),
        type="Opaque",
        string_data={proxy.secret_key: pem.decode("ascii")},
    )


def proxy_environment(proxy_url: str) -> list[client.V1EnvVar]:
    """Proxy routing variables in both spellings tools look for."""
    names = ["http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY"]
    return [client.V1EnvVar(name=name, value=proxy_url) for name in names]


def trust_install_script(proxy: ProxySettings) -> str:
    """Start command that installs the mounted CA, then keeps the container alive.

    The base image ships without ca-certificates, so the package install has
    to finish before the copy and the store refresh can run.
    """
    installed_name = proxy.secret_key.removesuffix(".pem") + ".crt"
    steps = [
        "apt-get update",
        "DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends "
        "ca-certificates curl",
        f"mkdir -p {SYSTEM_CA_DIR}",
        f"cp {TRUST_MOUNT_PATH}/{proxy.secret_key} {SYSTEM_CA_DIR}/{installed_name}",
        "update-ca-certificates",
        "exec sleep infinity",
    ]
    return " && ".join(steps)


def trusting_deployment(
    proxy: ProxySettings,
    namespace_name: str,
    proxy_url: str,
) -> client.V1Deployment:
    """Consumer workload routed through the proxy and trusting its CA.

    The system trust store is image state, so the CA is installed by the
    container's own start command in every new pod.
    """
    labels = {"app": proxy.client_name}
    container = client.V1Container(
        name=proxy.client_name,
        image=proxy.client_image,
        command=["/bin/sh", "-c"],
        args=[trust_install_script(proxy)],
        env=proxy_environment(proxy_url),
        volume_mounts=[
            client.V1VolumeMount(
                name="mitmproxy-ca",
                mount_path=TRUST_MOUNT_PATH,
                read_only=True,
            )
        ],
    )
    return client.V1Deployment(
        metadata=_metadata(proxy.client_name, namespace_name, **labels),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[container],
                    volumes=[
                        client.V1Volume(
                            name="mitmproxy-ca",
                            secret=client.V1SecretVolumeSource(secret_name=proxy.secret_name),
                        )
                    ],
                ),
            ),
        ),
    )


def istio_gateway(proxy: ProxySettings, namespace_name: str) -> dict[str, Any]:
    return {
        "apiVersion": f"{ISTIO_NETWORKING_GROUP}/{ISTIO_API_VERSION}",
        "kind": "Gateway",
        "metadata": {"name": GATEWAY_NAME, "namespace": namespace_name},
        "spec": {
            "selector": {"istio": "ingressgateway"},
            "servers": [
                {
                    "port": {"number": 80, "name": "http", "protocol": "HTTP"},
                    "hosts": ["*"],
                }
            ],
        },
    }


def istio_virtual_service(proxy: ProxySettings, namespace_name: str) -> dict[str, Any]:
    return {
        "apiVersion": f"{ISTIO_NETWORKING_GROUP}/{ISTIO_API_VERSION}",
        "kind": "VirtualService",
        "metadata": {"name": VIRTUAL_SERVICE_NAME, "namespace": namespace_name},
        "spec": {
            "hosts": ["*"],
            "gateways": [GATEWAY_NAME],
            "http": [
                {
                    "match": [{"uri": {"prefix": "/"}}],
                    "route": [
                        {
                            "destination": {
                                "host": (
                                    f"{proxy.service_name}.{namespace_name}.svc.cluster.local"
                                ),
                                "port": {"number": proxy.port},
                            }
                        }
                    ],
                }
            ],
        },
    }


def istio_authorization_policy(proxy: ProxySettings, namespace_name: str) -> dict[str, Any]:
    """Allow-all policy; a single empty rule matches every request."""
    return {
        "apiVersion": f"{ISTIO_SECURITY_GROUP}/{ISTIO_API_VERSION}",
        "kind": "AuthorizationPolicy",
        "metadata": {"name": AUTHORIZATION_POLICY_NAME, "namespace": namespace_name},
        "spec": {
            "selector": {"matchLabels": {"app": proxy.app_label}},
            "action": "ALLOW",
            "rules": [{}],
        },
    }


__all__ = [
    "ADMIN_BINDING_NAME",
    "AUTHORIZATION_POLICY_NAME",
    "GATEWAY_NAME",
    "NETWORK_POLICY_NAME",
    "VIRTUAL_SERVICE_NAME",
    "admin_role_binding",
    "allow_all_network_policy",
    "istio_authorization_policy",
    "istio_gateway",
    "istio_virtual_service",
    "namespace",
    "proxy_deployment",
    "proxy_environment",
    "proxy_service",
    "service_account",
    "trust_secret",
    "trusting_deployment",
]
