"""PostgREST-backed implementations of the store protocols.

Tables live in the ``provisioning`` schema:

- ``provisions``            (id PK)
- ``resource_reservations`` (resource_value PK; upsert via merge-duplicates)
- ``derived_sessions``      (id PK; partial unique index on provision_id
                             where status <> 'released')
- ``otp_attempts``          (id PK; append-only)

Reservation claims are conditional updates (``is_used=eq.false``) so two
pipelines racing for the same value cannot both bind it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from provision_engine.models import (
    DerivedSession,
    OtpAttempt,
    Provision,
    ProvisionState,
    ResourceReservation,
    SessionStatus,
    otp_attempt_from_row,
    provision_from_row,
    reservation_from_row,
    session_from_row,
    to_row,
)

from .postgrest import PostgrestClient

PROVISIONS_TABLE = "provisioning.provisions"
RESERVATIONS_TABLE = "provisioning.resource_reservations"
SESSIONS_TABLE = "provisioning.derived_sessions"
OTP_ATTEMPTS_TABLE = "provisioning.otp_attempts"

_TERMINAL_STATES = (ProvisionState.ACTIVE.value, ProvisionState.FAILED.value)

# Usage fields are owned by claim(); a re-record must never reset them.
_RESERVATION_RECORD_COLUMNS = ("resource_value", "external_id", "provider", "country", "service", "created_at")


class PostgrestProvisionStore:
    """Satisfies the ``ProvisionStore`` protocol."""

    def __init__(self, client: PostgrestClient) -> None:
        self._client = client

    async def get(self, provision_id: str) -> Provision | None:
        rows = await self._client.select(PROVISIONS_TABLE, filters={"id": ("eq", provision_id)}, limit=1)
        return provision_from_row(rows[0]) if rows else None

    async def create(self, provision: Provision) -> Provision:
        rows = await self._client.insert(PROVISIONS_TABLE, to_row(provision))
        return provision_from_row(rows[0])

    async def save(
        self, provision: Provision, *, expected_state: ProvisionState | None = None
    ) -> Provision | None:
        row = to_row(provision)
        row.pop("id")
        filters: dict[str, Any] = {"id": ("eq", provision.id)}
        if expected_state is not None:
            filters["state"] = ("eq", expected_state.value)
        rows = await self._client.update(PROVISIONS_TABLE, filters=filters, data=row)
        if not rows:
            if expected_state is not None and await self.get(provision.id) is not None:
                return None
            raise KeyError(provision.id)
        return provision_from_row(rows[0])

    async def list_active(self) -> list[Provision]:
        rows = await self._client.select(
            PROVISIONS_TABLE,
            filters={"state": ("not.in", _TERMINAL_STATES)},
            order="created_at.asc",
        )
        return [provision_from_row(row) for row in rows]


class PostgrestReservationStore:
    """Satisfies the ``ReservationStore`` protocol."""

    def __init__(self, client: PostgrestClient) -> None:
        self._client = client

    async def get(self, resource_value: str) -> ResourceReservation | None:
        rows = await self._client.select(
            RESERVATIONS_TABLE,
            filters={"resource_value": ("eq", resource_value)},
            limit=1,
        )
        return reservation_from_row(rows[0]) if rows else None

    async def upsert(self, reservation: ResourceReservation) -> ResourceReservation:
        full = to_row(reservation)
        row: dict[str, Any] = {key: full[key] for key in _RESERVATION_RECORD_COLUMNS}
        rows = await self._client.insert(
            RESERVATIONS_TABLE,
            row,
            upsert=True,
            on_conflict="resource_value",
        )
        return reservation_from_row(rows[0])

    async def claim(
        self, resource_value: str, provision_id: str, used_at: datetime
    ) -> ResourceReservation | None:
        rows = await self._client.update(
            RESERVATIONS_TABLE,
            filters={
                "resource_value": ("eq", resource_value),
                "is_used": ("is", False),
            },
            data={
                "is_used": True,
                "used_at": used_at.isoformat(),
                "provision_id": provision_id,
            },
        )
        return reservation_from_row(rows[0]) if rows else None

    async def list_unused(self, created_before: datetime) -> list[ResourceReservation]:
        rows = await self._client.select(
            RESERVATIONS_TABLE,
            filters={
                "is_used": ("is", False),
                "created_at": ("lt", created_before.isoformat()),
            },
            order="created_at.asc",
        )
        return [reservation_from_row(row) for row in rows]

    async def delete(self, resource_value: str) -> bool:
        rows = await self._client.delete(
            RESERVATIONS_TABLE,
            filters={"resource_value": ("eq", resource_value)},
        )
        return bool(rows)


class PostgrestSessionStore:
    """Satisfies the ``SessionStore`` protocol."""

    def __init__(self, client: PostgrestClient) -> None:
        self._client = client

    async def create(self, session: DerivedSession) -> DerivedSession:
        # A unique violation on the open-session index surfaces as PostgrestConflictError.
        rows = await self._client.insert(SESSIONS_TABLE, to_row(session))
        return session_from_row(rows[0])

    async def get(self, session_id: str) -> DerivedSession | None:
        rows = await self._client.select(SESSIONS_TABLE, filters={"id": ("eq", session_id)}, limit=1)
        return session_from_row(rows[0]) if rows else None

    async def save(self, session: DerivedSession) -> DerivedSession:
        row = to_row(session)
        row.pop("id")
        rows = await self._client.update(SESSIONS_TABLE, filters={"id": ("eq", session.id)}, data=row)
        if not rows:
            raise KeyError(session.id)
        return session_from_row(rows[0])

    async def find_open(self, provision_id: str) -> DerivedSession | None:
        rows = await self._client.select(
            SESSIONS_TABLE,
            filters={
                "provision_id": ("eq", provision_id),
                "status": ("neq", SessionStatus.RELEASED.value),
            },
            limit=1,
        )
        return session_from_row(rows[0]) if rows else None

    async def list_for_provision(self, provision_id: str) -> list[DerivedSession]:
        rows = await self._client.select(
            SESSIONS_TABLE,
            filters={"provision_id": ("eq", provision_id)},
            order="created_at.asc",
        )
        return [session_from_row(row) for row in rows]


class PostgrestOtpAttemptStore:
    """Satisfies the ``OtpAttemptStore`` protocol."""

    def __init__(self, client: PostgrestClient) -> None:
        self._client = client

    async def append(self, attempt: OtpAttempt) -> OtpAttempt:
        rows = await self._client.insert(OTP_ATTEMPTS_TABLE, to_row(attempt))
        return otp_attempt_from_row(rows[0])

    async def list_for_provision(self, provision_id: str) -> list[OtpAttempt]:
        rows = await self._client.select(
            OTP_ATTEMPTS_TABLE,
            filters={"provision_id": ("eq", provision_id)},
            order="received_at.asc",
        )
        return [otp_attempt_from_row(row) for row in rows]
