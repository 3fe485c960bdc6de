"""Observability infrastructure for the provisioning engine.

Provides structured logging with provision correlation and per-runtime
Prometheus metrics.

Quick start::

    from provision_engine.observability import configure_logging

    configure_logging(level=settings.log_level, json_output=settings.log_json)
    runtime = build_runtime(settings, acquirer=..., driver=...)
    body, content_type = runtime.metrics.metrics_text()
"""

from .logging import bound_context, configure_logging, get_logger
from .metrics import ProvisionerMetrics

__all__ = [
    "ProvisionerMetrics",
    "bound_context",
    "configure_logging",
    "get_logger",
]
