"""Provisioning orchestrator.

Runs every step strictly in order, since each step reads state the previous
one wrote. Context resolution happens before any client is built, so an
unresolved context can never reach the cluster. There is no rollback: a
failed run leaves applied objects in place and is safe to re-run.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from kubemitm.config.settings import Settings
from kubemitm.errors import ProvisioningError, ensure_provisioning_error
from kubemitm.kubernetes.clients import (
    ApplyOutcome,
    ClusterClients,
    ControlPlane,
    load_cluster_clients,
)
from kubemitm.kubernetes.commands import CommandRunner
from kubemitm.mesh.detector import MeshDetector, ServiceMeshKind
from kubemitm.mesh.reconciler import MeshPolicyReconciler, MeshPolicySet
from kubemitm.observability.logging import LogContext, get_logger
from kubemitm.observability.metrics import record_step
from kubemitm.provisioning.context import ClusterContext, ClusterContextResolver
from kubemitm.provisioning.identity import IdentityProvisioner, ServiceIdentity
from kubemitm.provisioning.namespace import NamespaceBootstrapper
from kubemitm.provisioning.proxy import ProxyDeployer, ProxyDeployment
from kubemitm.provisioning.trust import TrustBundle, TrustPropagator


log = get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[ClusterContext], ClusterClients]


@dataclass(frozen=True)
class StepOutcome:
    """Record of one orchestrator step."""

    step: str
    outcome: str
    detail: str = ""
    duration: float = 0.0


@dataclass
class RunReport:
    """Everything a provisioning run did, in order."""

    steps: list[StepOutcome] = field(default_factory=list)
    context: ClusterContext | None = None
    proxy: ProxyDeployment | None = None
    mesh: ServiceMeshKind | None = None
    policy: MeshPolicySet | None = None
    error: ProvisioningError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def summary_lines(self) -> list[str]:
        lines = [f"{s.step:<28} {s.outcome:<10} {s.detail}".rstrip() for s in self.steps]
        if self.error is not None:
            lines.append(f"FAILED at {self.error.step}: {self.error.message}")
        return lines


def _outcome(result: Any) -> str:
    if isinstance(result, ApplyOutcome):
        return result.value
    return "ok"


class Orchestrator:
    """Sequences context resolution, provisioning, trust and mesh steps."""

    def __init__(
        self,
        settings: Settings,
        *,
        runner: CommandRunner | None = None,
        resolver: ClusterContextResolver | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner(kubeconfig_path=settings.kubernetes.kubeconfig_path)
        self.resolver = resolver or ClusterContextResolver(
            self.runner, kubeconfig_path=settings.kubernetes.kubeconfig_path
        )
        self.client_factory = client_factory or self._load_clients
        self.report = RunReport()

    def _load_clients(self, context: ClusterContext) -> ClusterClients:
        return load_cluster_clients(self.settings.kubernetes, context=context.kube_context)

    async def _step(
        self,
        name: str,
        action: Callable[[], Awaitable[T]],
        describe: Callable[[T], str] | None = None,
    ) -> T:
        start = time.monotonic()
        with LogContext(step=name):
            log.info("step_started")
            try:
                result = await action()
            except Exception as e:
                duration = time.monotonic() - start
                error = ensure_provisioning_error(e, step=name)
                record_step(name, "failed", duration)
                self.report.steps.append(StepOutcome(name, "failed", error.message, duration))
                log.error("step_failed", error=error.to_dict())
                if error is e:
                    raise
                raise error from e

        duration = time.monotonic() - start
        outcome = _outcome(result)
        detail = describe(result) if describe is not None else ""
        record_step(name, outcome, duration)
        self.report.steps.append(StepOutcome(name, outcome, detail, duration))
        log.info("step_finished", outcome=outcome, duration=round(duration, 3))
        return result

    async def run(self) -> RunReport:
        """Run the full provisioning sequence.

        Errors are recorded on the report rather than raised so the CLI can
        render partial progress.
        """
        try:
            await self._run()
        except ProvisioningError as e:
            self.report.error = e
        return self.report

    async def _run(self) -> None:
        proxy_cfg = self.settings.proxy
        namespace = proxy_cfg.namespace

        context = await self._step(
            "resolve_context",
            self.resolver.resolve,
            lambda c: f"{c.project_id}/{c.cluster_location}/{c.cluster_name}",
        )
        self.report.context = context

        if proxy_cfg.fetch_credentials:
            await self._step(
                "fetch_credentials", lambda: self.resolver.fetch_credentials(context)
            )

        async def connect() -> ClusterClients:
            return self.client_factory(context)

        clients = await self._step(
            "connect_cluster", connect, lambda _: context.kube_context or "current-context"
        )
        cp = ControlPlane(clients, self.settings.kubernetes)
        identities = IdentityProvisioner(self.runner, self.settings.identity)
        bootstrapper = NamespaceBootstrapper(cp)
        deployer = ProxyDeployer(cp, proxy_cfg)
        trust = TrustPropagator(cp, proxy_cfg)
        detector = MeshDetector(cp)
        reconciler = MeshPolicyReconciler(cp, self.runner, proxy_cfg)

        identity: ServiceIdentity = await self._step(
            "ensure_identity",
            lambda: identities.ensure_identity(context),
            lambda i: i.email,
        )
        for role in self.settings.identity.project_roles:
            await self._step(
                f"bind_role:{role}",
                lambda role=role: identities.bind_role(identity, role, context.project_id),
                lambda _, role=role: f"{role} on {context.project_id}",
            )

        await self._step(
            "ensure_namespace",
            lambda: bootstrapper.ensure_namespace(namespace),
            lambda ns: ns.metadata.name,
        )
        await self._step(
            "ensure_service_account",
            lambda: bootstrapper.ensure_service_account(namespace, identity),
        )
        await self._step(
            "ensure_admin_binding",
            lambda: bootstrapper.ensure_admin_binding(namespace, identity),
        )
        await self._step(
            "apply_network_policy",
            lambda: bootstrapper.apply_permissive_network_policy(namespace),
        )

        proxy: ProxyDeployment = await self._step(
            "deploy_proxy",
            lambda: deployer.deploy_proxy(namespace, identity.name),
            lambda p: p.endpoint,
        )
        self.report.proxy = proxy

        # Mesh remediation may re-roll the proxy pod, and every new pod
        # generates a new CA, so the CA is read only after the final rollout.
        mesh: ServiceMeshKind = await self._step(
            "detect_mesh",
            lambda: detector.detect(namespace),
            lambda k: k.value,
        )
        self.report.mesh = mesh
        self.report.policy = await self._step(
            "reconcile_mesh",
            lambda: reconciler.reconcile(mesh, namespace, proxy),
            lambda p: ", ".join(f"{kind}/{name}" for kind, name in p.applied) or "no-op",
        )

        await self._step(
            "wait_proxy_ready",
            lambda: deployer.wait_until_ready(proxy, proxy_cfg.ready_timeout_seconds),
        )

        bundle: TrustBundle = await self._step(
            "extract_trust_bundle",
            lambda: trust.extract_trust_bundle(proxy),
            lambda b: f"from {b.source_pod}",
        )

        async def write_ca() -> str:
            return str(trust.write_local_copy(bundle))

        await self._step("write_ca_file", write_ca, lambda path: path)
        await self._step(
            "materialize_secret",
            lambda: trust.materialize_secret(bundle, namespace),
        )
        await self._step(
            "deploy_trusting_workload",
            lambda: trust.deploy_trusting_workload(namespace, proxy, bundle),
        )
        log.info("provisioning_complete", namespace=namespace, proxy=proxy.endpoint)


__all__ = ["Orchestrator", "RunReport", "StepOutcome"]
