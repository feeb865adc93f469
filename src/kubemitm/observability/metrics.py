"""Prometheus metrics for provisioning runs.

A run is a short-lived CLI process, so metrics live in a private registry
and are written to a node-exporter textfile at the end of the run instead of
being served over HTTP.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile


registry = CollectorRegistry()

METRICS_NAMESPACE = "kubemitm"


provisioning_steps_total = Counter(
    name="provisioning_steps_total",
    documentation="Provisioning steps executed, by step and outcome",
    labelnames=["step", "outcome"],
    registry=registry,
    namespace=METRICS_NAMESPACE,
)

control_plane_retries_total = Counter(
    name="control_plane_retries_total",
    documentation="Transient control-plane failures that were retried",
    labelnames=["operation"],
    registry=registry,
    namespace=METRICS_NAMESPACE,
)

trust_extraction_attempts_total = Counter(
    name="trust_extraction_attempts_total",
    documentation="Attempts to read the CA certificate out of the proxy pod",
    labelnames=["result"],
    registry=registry,
    namespace=METRICS_NAMESPACE,
)

provisioning_step_duration_seconds = Histogram(
    name="provisioning_step_duration_seconds",
    documentation="Wall-clock duration of provisioning steps",
    labelnames=["step"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=registry,
    namespace=METRICS_NAMESPACE,
)


def record_step(step: str, outcome: str, duration: float) -> None:
    """Record the outcome and duration of one orchestrator step."""
    provisioning_steps_total.labels(step=step, outcome=outcome).inc()
    provisioning_step_duration_seconds.labels(step=step).observe(duration)


def write_metrics(path: str) -> None:
    """Write the run's metrics in Prometheus text format."""
    write_to_textfile(path, registry)


__all__ = [
    "control_plane_retries_total",
    "provisioning_step_duration_seconds",
    "provisioning_steps_total",
    "record_step",
    "registry",
    "trust_extraction_attempts_total",
    "write_metrics",
]
