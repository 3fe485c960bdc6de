"""Prometheus metrics for the provisioning engine.

Collectors live on a ``ProvisionerMetrics`` instance built once at process
start (see ``runtime.build_runtime``) instead of module globals, so each
runtime, and each test, owns its own registry.

Usage::

    metrics = ProvisionerMetrics()
    metrics.state_transitions.labels(state="PURCHASING").inc()
    body = metrics.metrics_text()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class ProvisionerMetrics:
    """Counters, histograms and gauges for one engine runtime."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # -------------------------------------------------------------------
        # Provision lifecycle
        # -------------------------------------------------------------------

        self.state_transitions = Counter(
            "provisioner_state_transitions_total",
            "Provision state transitions by destination state.",
            labelnames=["state"],
            registry=self.registry,
        )

        self.compensations = Counter(
            "provisioner_compensations_total",
            "Compensating re-purchases after an already-bound resource.",
            registry=self.registry,
        )

        self.duplicate_executions = Counter(
            "provisioner_duplicate_executions_total",
            "Pipeline deliveries rejected as duplicates.",
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Providers
        # -------------------------------------------------------------------

        self.purchase_attempts = Counter(
            "provisioner_purchase_attempts_total",
            "Cascade purchase attempts by provider and outcome.",
            labelnames=["provider", "outcome"],
            registry=self.registry,
        )

        self.otp_wait_seconds = Histogram(
            "provisioner_otp_wait_seconds",
            "Time from first poll to code delivery.",
            buckets=(5, 10, 20, 30, 60, 90, 120, 180, 300),
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Jobs
        # -------------------------------------------------------------------

        self.jobs_total = Counter(
            "provisioner_jobs_total",
            "Job executions by queue and outcome.",
            labelnames=["queue", "outcome"],
            registry=self.registry,
        )

        self.jobs_in_flight = Gauge(
            "provisioner_jobs_in_flight",
            "Jobs currently executing, by queue.",
            labelnames=["queue"],
            registry=self.registry,
        )

    def metrics_text(self) -> tuple[bytes, str]:
        """Return the Prometheus exposition body and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
