"""Provisioning orchestration engine."""

from .observability import configure_logging
from .runtime import Runtime, build_runtime
from .settings import ProvisionerSettings

__all__ = ["ProvisionerSettings", "Runtime", "build_runtime", "configure_logging"]
