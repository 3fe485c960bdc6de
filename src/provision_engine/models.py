"""Provisioning domain records.

Frozen snapshots for the four persisted entities. Every mutation produces a
new snapshot via ``dataclasses.replace``; stores persist whole snapshots.

Row helpers translate to and from the flat dict shape used by PostgREST and
the in-memory stores (ISO-8601 timestamps, string enum values).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4


class ProvisionState(str, Enum):
    PENDING = 'PENDING'
    ACQUIRING_RESOURCE = 'ACQUIRING_RESOURCE'
    PURCHASING = 'PURCHASING'
    AUTOMATING = 'AUTOMATING'
    AWAITING_CODE = 'AWAITING_CODE'
    INJECTING_CODE = 'INJECTING_CODE'
    FINALIZING = 'FINALIZING'
    ACTIVE = 'ACTIVE'
    FAILED = 'FAILED'


class SessionStatus(str, Enum):
    STARTING = 'starting'
    ACTIVE = 'active'
    RELEASED = 'released'


TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.RELEASED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True, slots=True)
class Provision:
    """One end-to-end attempt to turn a purchased resource into a live session."""

    id: str
    state: ProvisionState = ProvisionState.PENDING
    country_preference: str | None = None
    service_selector: str | None = None
    link_to_web: bool = False
    resolved_phone: str | None = None
    external_id: str | None = None
    provider: str | None = None
    last_error: str | None = None
    compensations: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    state_entered_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ResourceReservation:
    """Ledger entry for one purchased phone number, keyed by resource_value."""

    resource_value: str
    external_id: str
    provider: str
    country: str | None = None
    service: str | None = None
    is_used: bool = False
    used_at: datetime | None = None
    provision_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class DerivedSession:
    """Runtime container backing a provision."""

    id: str
    provision_id: str
    handle: str
    automation_endpoint: str
    ports: Mapping[str, int] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.STARTING
    is_active: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


@dataclass(frozen=True, slots=True)
class OtpAttempt:
    """Append-only record of one delivered verification message."""

    id: str
    provision_id: str
    raw_text: str
    code: str
    provider: str | None = None
    external_id: str | None = None
    received_at: datetime = field(default_factory=utc_now)


# ── Row mapping ──────────────────────────────────────────────────────


def _dump(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return dict(value)
    return value


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def to_row(record: Any) -> dict[str, Any]:
    """Flatten a record dataclass into a JSON-serialisable row."""
    return {key: _dump(value) for key, value in asdict(record).items()}


def provision_from_row(row: Mapping[str, Any]) -> Provision:
    return Provision(
        id=str(row['id']),
        state=ProvisionState(row['state']),
        country_preference=row.get('country_preference'),
        service_selector=row.get('service_selector'),
        link_to_web=bool(row.get('link_to_web', False)),
        resolved_phone=row.get('resolved_phone'),
        external_id=row.get('external_id'),
        provider=row.get('provider'),
        last_error=row.get('last_error'),
        compensations=int(row.get('compensations') or 0),
        created_at=_parse_dt(row.get('created_at')) or utc_now(),
        updated_at=_parse_dt(row.get('updated_at')) or utc_now(),
        state_entered_at=_parse_dt(row.get('state_entered_at')) or utc_now(),
    )


def reservation_from_row(row: Mapping[str, Any]) -> ResourceReservation:
    return ResourceReservation(
        resource_value=str(row['resource_value']),
        external_id=str(row['external_id']),
        provider=str(row['provider']),
        country=row.get('country'),
        service=row.get('service'),
        is_used=bool(row.get('is_used', False)),
        used_at=_parse_dt(row.get('used_at')),
        provision_id=row.get('provision_id'),
        created_at=_parse_dt(row.get('created_at')) or utc_now(),
    )


def session_from_row(row: Mapping[str, Any]) -> DerivedSession:
    return DerivedSession(
        id=str(row['id']),
        provision_id=str(row['provision_id']),
        handle=str(row['handle']),
        automation_endpoint=str(row['automation_endpoint']),
        ports=dict(row.get('ports') or {}),
        status=SessionStatus(row.get('status', SessionStatus.STARTING.value)),
        is_active=bool(row.get('is_active', False)),
        created_at=_parse_dt(row.get('created_at')) or utc_now(),
        updated_at=_parse_dt(row.get('updated_at')) or utc_now(),
    )


def otp_attempt_from_row(row: Mapping[str, Any]) -> OtpAttempt:
    return OtpAttempt(
        id=str(row['id']),
        provision_id=str(row['provision_id']),
        raw_text=str(row['raw_text']),
        code=str(row['code']),
        provider=row.get('provider'),
        external_id=row.get('external_id'),
        received_at=_parse_dt(row.get('received_at')) or utc_now(),
    )


# ── Collaborator payloads ────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SessionSpec:
    """What the pipeline asks the container collaborator to start."""

    provision_id: str
    ports: Mapping[str, int]
    link_to_web: bool = False
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AcquiredSession:
    """Handle returned by the container collaborator."""

    handle: str
    automation_endpoint: str
