"""Store and collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, PostgREST for deployed environments) must satisfy.
``build_runtime`` accepts any implementation that matches them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from .models import (
    AcquiredSession,
    DerivedSession,
    OtpAttempt,
    Provision,
    ProvisionState,
    ResourceReservation,
    SessionSpec,
)

ResourceProvider = Callable[[], Awaitable[str]]
"""Single-use purchase callback handed to the automation driver."""


# ── Stores ───────────────────────────────────────────────────────


@runtime_checkable
class ProvisionStore(Protocol):
    """Provision persistence."""

    async def get(self, provision_id: str) -> Provision | None: ...
    async def create(self, provision: Provision) -> Provision: ...
    async def save(
        self, provision: Provision, *, expected_state: ProvisionState | None = None
    ) -> Provision | None: ...
    async def list_active(self) -> list[Provision]: ...


@runtime_checkable
class ReservationStore(Protocol):
    """Resource ledger persistence, keyed by resource_value."""

    async def get(self, resource_value: str) -> ResourceReservation | None: ...
    async def upsert(self, reservation: ResourceReservation) -> ResourceReservation: ...
    async def claim(
        self, resource_value: str, provision_id: str, used_at: datetime
    ) -> ResourceReservation | None: ...
    async def list_unused(self, created_before: datetime) -> list[ResourceReservation]: ...
    async def delete(self, resource_value: str) -> bool: ...


@runtime_checkable
class SessionStore(Protocol):
    """Derived session persistence."""

    async def create(self, session: DerivedSession) -> DerivedSession: ...
    async def get(self, session_id: str) -> DerivedSession | None: ...
    async def save(self, session: DerivedSession) -> DerivedSession: ...
    async def find_open(self, provision_id: str) -> DerivedSession | None: ...
    async def list_for_provision(self, provision_id: str) -> list[DerivedSession]: ...


@runtime_checkable
class OtpAttemptStore(Protocol):
    """Append-only delivered-code log."""

    async def append(self, attempt: OtpAttempt) -> OtpAttempt: ...
    async def list_for_provision(self, provision_id: str) -> list[OtpAttempt]: ...


# ── External collaborators ───────────────────────────────────────


@runtime_checkable
class SessionAcquirer(Protocol):
    """Starts and stops the container backing a provision."""

    async def acquire(self, spec: SessionSpec) -> AcquiredSession: ...
    async def release(self, handle: str) -> None: ...


@runtime_checkable
class AutomationDriver(Protocol):
    """Drives the target app's registration UI inside a session.

    ``register`` calls ``resource`` at most once per invocation, at the moment
    the UI is ready for the phone number, and raises
    ``ResourceAlreadyBoundError`` when the app reports the number is taken.
    """

    async def register(
        self,
        endpoint: str,
        resource: ResourceProvider,
        country_hint: str | None = None,
    ) -> None: ...
    async def inject_code(self, endpoint: str, code: str) -> None: ...
    async def reset(self, endpoint: str) -> None: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers broadcast events to observers."""

    async def deliver(self, event: str, payload: dict[str, Any]) -> None: ...
