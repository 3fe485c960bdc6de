"""Provisioning engine configuration settings.

ProvisionerSettings is the single configuration object accepted by
build_runtime(). It is a plain dataclass (not env-coupled) so tests can
inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

DEFAULT_CASCADE_COUNTRIES = (
    "United States",
    "Canada",
    "France",
    "United Kingdom",
    "Germany",
)

DEFAULT_PROVIDER_ORDER = ("onlinesim", "smsman")

DEFAULT_STATE_TIMEOUT_SECONDS: Mapping[str, int] = MappingProxyType(
    {
        "ACQUIRING_RESOURCE": 180,
        "PURCHASING": 300,
        "AUTOMATING": 600,
        "AWAITING_CODE": 900,
        "INJECTING_CODE": 660,
        "FINALIZING": 120,
    }
)


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    return int(raw) if raw else default


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True, slots=True)
class ProvisionerSettings:
    """Configuration for the provisioning engine.

    All fields have defaults suitable for local development. Non-local
    environments must supply at least one provider credential.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Providers ──────────────────────────────────────────────────
    smsman_token: str = ""
    """SMS-Man API token. Never log this."""

    smsman_api_url: str = "https://api.sms-man.com/control"

    onlinesim_api_key: str = ""
    """OnlineSim API key. Never log this."""

    onlinesim_base_url: str = "https://onlinesim.io/api"

    provider_order: tuple[str, ...] = DEFAULT_PROVIDER_ORDER
    """Providers tried per country, in order."""

    cascade_countries: tuple[str, ...] = DEFAULT_CASCADE_COUNTRIES
    """Built-in country priority used when the caller gives no preference."""

    default_service: str = "whatsapp"

    probe_availability: bool = True

    provider_timeout_seconds: float = 30.0

    # ── Verification code polling ──────────────────────────────────
    otp_poll_interval_seconds: float = 10.0
    otp_window_seconds: float = 60.0
    otp_max_windows: int = 3
    otp_code_length: int = 6

    # ── Pipeline ───────────────────────────────────────────────────
    pipeline_deadline_seconds: float = 900.0
    """End-to-end deadline for one pipeline run."""

    injection_wait_seconds: float = 600.0
    """How long the pipeline waits for the code-injection job."""

    max_compensations: int = 1

    # ── Job scheduling ─────────────────────────────────────────────
    pipeline_concurrency: int = 1
    injection_concurrency: int = 5
    job_max_attempts: int = 3
    job_retry_backoff_seconds: float = 2.0

    # ── Maintenance ────────────────────────────────────────────────
    reservation_orphan_ttl_seconds: int = 1200
    state_timeout_seconds: Mapping[str, int] = field(
        default_factory=lambda: DEFAULT_STATE_TIMEOUT_SECONDS
    )

    # ── Notifications ──────────────────────────────────────────────
    broadcast_url: str = ""
    """Endpoint receiving state-change broadcasts. Empty disables HTTP delivery."""

    # ── Ports ──────────────────────────────────────────────────────
    base_vnc_port: int = 6080
    base_automation_port: int = 4723
    base_adb_port: int = 5555
    port_range_size: int = 1000

    # ── Persistence ────────────────────────────────────────────────
    postgrest_url: str = ""
    postgrest_service_key: str = ""
    """Service key for PostgREST calls. Never log this."""

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def uses_postgrest(self) -> bool:
        return bool(self.postgrest_url)

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local and not (self.smsman_token or self.onlinesim_api_key):
            errors.append(
                f"{self.environment}: at least one of smsman_token or "
                "onlinesim_api_key is required"
            )
        if self.postgrest_url and not self.postgrest_service_key:
            errors.append("postgrest_service_key is required when postgrest_url is set")
        if not self.provider_order:
            errors.append("provider_order must name at least one provider")
        unknown = set(self.provider_order) - {"smsman", "onlinesim"}
        if unknown:
            errors.append(f"unknown providers in provider_order: {sorted(unknown)}")
        if self.otp_max_windows < 1:
            errors.append("otp_max_windows must be >= 1")
        if self.otp_poll_interval_seconds <= 0:
            errors.append("otp_poll_interval_seconds must be > 0")
        if self.otp_window_seconds < self.otp_poll_interval_seconds:
            errors.append("otp_window_seconds must be >= otp_poll_interval_seconds")
        if self.pipeline_deadline_seconds <= 0:
            errors.append("pipeline_deadline_seconds must be > 0")
        if self.max_compensations < 0:
            errors.append("max_compensations must be >= 0")
        if self.pipeline_concurrency < 1 or self.injection_concurrency < 1:
            errors.append("queue concurrency must be >= 1")
        if self.job_max_attempts < 1:
            errors.append("job_max_attempts must be >= 1")
        return errors

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ProvisionerSettings:
        """Build settings from environment variables.

        Convenience factory for production use. Tests should construct
        ProvisionerSettings directly.
        """
        if env is None:
            env = dict(os.environ)
        defaults = cls()

        order = _split_csv(env.get("PROVIDER_ORDER", "")) or defaults.provider_order
        countries = _split_csv(env.get("CASCADE_COUNTRIES", "")) or defaults.cascade_countries

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            smsman_token=env.get("SMSMAN_TOKEN", ""),
            smsman_api_url=env.get("SMSMAN_API_URL", "") or defaults.smsman_api_url,
            onlinesim_api_key=env.get("ONLINESIM_API_KEY", ""),
            onlinesim_base_url=env.get("ONLINESIM_BASE_URL", "") or defaults.onlinesim_base_url,
            provider_order=tuple(p.lower() for p in order),
            cascade_countries=countries,
            default_service=env.get("DEFAULT_SERVICE", "") or defaults.default_service,
            probe_availability=env.get("PROBE_AVAILABILITY", "true").lower() != "false",
            otp_poll_interval_seconds=_float(env, "OTP_POLL_INTERVAL_SECONDS", defaults.otp_poll_interval_seconds),
            otp_window_seconds=_float(env, "OTP_WINDOW_SECONDS", defaults.otp_window_seconds),
            otp_max_windows=_int(env, "OTP_MAX_WINDOWS", defaults.otp_max_windows),
            otp_code_length=_int(env, "OTP_CODE_LENGTH", defaults.otp_code_length),
            pipeline_deadline_seconds=_float(env, "PIPELINE_DEADLINE_SECONDS", defaults.pipeline_deadline_seconds),
            injection_wait_seconds=_float(env, "INJECTION_WAIT_SECONDS", defaults.injection_wait_seconds),
            max_compensations=_int(env, "MAX_COMPENSATIONS", defaults.max_compensations),
            pipeline_concurrency=_int(env, "PIPELINE_CONCURRENCY", defaults.pipeline_concurrency),
            injection_concurrency=_int(env, "INJECTION_CONCURRENCY", defaults.injection_concurrency),
            job_max_attempts=_int(env, "JOB_MAX_ATTEMPTS", defaults.job_max_attempts),
            job_retry_backoff_seconds=_float(env, "JOB_RETRY_BACKOFF_SECONDS", defaults.job_retry_backoff_seconds),
            reservation_orphan_ttl_seconds=_int(
                env, "RESERVATION_ORPHAN_TTL_SECONDS", defaults.reservation_orphan_ttl_seconds
            ),
            broadcast_url=env.get("BROADCAST_URL", ""),
            base_vnc_port=_int(env, "BASE_VNC_PORT", defaults.base_vnc_port),
            base_automation_port=_int(env, "BASE_AUTOMATION_PORT", defaults.base_automation_port),
            base_adb_port=_int(env, "BASE_ADB_PORT", defaults.base_adb_port),
            postgrest_url=env.get("POSTGREST_URL", ""),
            postgrest_service_key=env.get("POSTGREST_SERVICE_KEY", ""),
            log_level=env.get("LOG_LEVEL", "") or defaults.log_level,
            log_json=env.get("LOG_FORMAT", "json") == "json",
        )
