"""In-memory store and collaborator implementations.

Used when no PostgREST URL is configured and throughout the test suite.
They satisfy the protocol interfaces but keep everything in dicts (no
persistence across restarts). Uniqueness rules mirror the database
constraints: one reservation per resource_value, at most one open session
per provision.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Sequence

from .errors import ErrorClass, ResourceAlreadyBoundError
from .models import (
    TERMINAL_SESSION_STATUSES,
    AcquiredSession,
    DerivedSession,
    OtpAttempt,
    Provision,
    ProvisionState,
    ResourceReservation,
    SessionSpec,
)
from .providers.base import WAITING, PollResult, Purchase, classify_error
from .protocols import ResourceProvider

_TERMINAL_PROVISION_STATES = frozenset({ProvisionState.ACTIVE, ProvisionState.FAILED})


# ── Stores ───────────────────────────────────────────────────────────


class InMemoryProvisionStore:
    def __init__(self) -> None:
        self._provisions: dict[str, Provision] = {}

    async def get(self, provision_id: str) -> Provision | None:
        return self._provisions.get(provision_id)

    async def create(self, provision: Provision) -> Provision:
        if provision.id in self._provisions:
            raise ValueError(f"provision {provision.id} already exists")
        self._provisions[provision.id] = provision
        return provision

    async def save(
        self, provision: Provision, *, expected_state: ProvisionState | None = None
    ) -> Provision | None:
        current = self._provisions.get(provision.id)
        if current is None:
            raise KeyError(provision.id)
        if expected_state is not None and current.state is not expected_state:
            return None
        self._provisions[provision.id] = provision
        return provision

    async def list_active(self) -> list[Provision]:
        return [
            p for p in self._provisions.values()
            if p.state not in _TERMINAL_PROVISION_STATES
        ]


class InMemoryReservationStore:
    def __init__(self) -> None:
        self._reservations: dict[str, ResourceReservation] = {}

    async def get(self, resource_value: str) -> ResourceReservation | None:
        return self._reservations.get(resource_value)

    async def upsert(self, reservation: ResourceReservation) -> ResourceReservation:
        existing = self._reservations.get(reservation.resource_value)
        if existing is not None:
            # Merge: usage fields are owned by claim(), never reset by a re-record.
            reservation = replace(
                reservation,
                is_used=existing.is_used,
                used_at=existing.used_at,
                provision_id=existing.provision_id,
                created_at=existing.created_at,
            )
        self._reservations[reservation.resource_value] = reservation
        return reservation

    async def claim(
        self, resource_value: str, provision_id: str, used_at: datetime
    ) -> ResourceReservation | None:
        existing = self._reservations.get(resource_value)
        if existing is None or existing.is_used:
            return None
        claimed = replace(existing, is_used=True, used_at=used_at, provision_id=provision_id)
        self._reservations[resource_value] = claimed
        return claimed

    async def list_unused(self, created_before: datetime) -> list[ResourceReservation]:
        return [
            r for r in self._reservations.values()
            if not r.is_used and r.created_at < created_before
        ]

    async def delete(self, resource_value: str) -> bool:
        return self._reservations.pop(resource_value, None) is not None


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, DerivedSession] = {}

    async def create(self, session: DerivedSession) -> DerivedSession:
        if session.status not in TERMINAL_SESSION_STATUSES:
            existing = await self.find_open(session.provision_id)
            if existing is not None:
                raise ValueError(
                    f"provision {session.provision_id} already has open session {existing.id}"
                )
        self._sessions[session.id] = session
        return session

    async def get(self, session_id: str) -> DerivedSession | None:
        return self._sessions.get(session_id)

    async def save(self, session: DerivedSession) -> DerivedSession:
        if session.id not in self._sessions:
            raise KeyError(session.id)
        self._sessions[session.id] = session
        return session

    async def find_open(self, provision_id: str) -> DerivedSession | None:
        for session in self._sessions.values():
            if session.provision_id == provision_id and not session.is_terminal:
                return session
        return None

    async def list_for_provision(self, provision_id: str) -> list[DerivedSession]:
        return [s for s in self._sessions.values() if s.provision_id == provision_id]


class InMemoryOtpAttemptStore:
    def __init__(self) -> None:
        self._attempts: list[OtpAttempt] = []

    async def append(self, attempt: OtpAttempt) -> OtpAttempt:
        self._attempts.append(attempt)
        return attempt

    async def list_for_provision(self, provision_id: str) -> list[OtpAttempt]:
        return [a for a in self._attempts if a.provision_id == provision_id]


# ── Collaborators ────────────────────────────────────────────────────


class InMemoryNotificationSink:
    """Records delivered events; optionally fails every delivery."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def deliver(self, event: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("notification sink unavailable")
        self.events.append((event, payload))

    def of_type(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


class InMemorySessionAcquirer:
    """Container collaborator that hands out fake endpoints and tracks calls."""

    def __init__(self, *, acquire_fails: bool = False, delay: float = 0.0) -> None:
        self.acquire_fails = acquire_fails
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.live: set[str] = set()

    async def acquire(self, spec: SessionSpec) -> AcquiredSession:
        self.calls.append(("acquire", spec.provision_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.acquire_fails:
            raise RuntimeError("container start failed")
        handle = f"session-{spec.provision_id}"
        self.live.add(handle)
        port = spec.ports.get("automation", 0)
        return AcquiredSession(handle=handle, automation_endpoint=f"http://127.0.0.1:{port}")

    async def release(self, handle: str) -> None:
        self.calls.append(("release", handle))
        self.live.discard(handle)


class InMemoryAutomationDriver:
    """Scripted automation driver.

    ``bound_signals`` is how many ``register`` calls should fail with
    ``ResourceAlreadyBoundError`` after consuming the resource.
    ``swallow_resource_errors`` makes ``register`` return normally when the
    resource provider raises.
    """

    def __init__(
        self,
        *,
        bound_signals: int = 0,
        register_fails: bool = False,
        skip_resource: bool = False,
        inject_failures: int = 0,
        register_delay: float = 0.0,
        swallow_resource_errors: bool = False,
    ) -> None:
        self.bound_signals = bound_signals
        self.swallow_resource_errors = swallow_resource_errors
        self.register_fails = register_fails
        self.skip_resource = skip_resource
        self.inject_failures = inject_failures
        self.register_delay = register_delay
        self.calls: list[tuple[str, str]] = []
        self.resources: list[str] = []
        self.injected: list[str] = []

    async def register(
        self,
        endpoint: str,
        resource: ResourceProvider,
        country_hint: str | None = None,
    ) -> None:
        self.calls.append(("register", endpoint))
        if self.register_fails:
            raise RuntimeError("registration screen not found")
        if self.register_delay:
            await asyncio.sleep(self.register_delay)
        if self.skip_resource:
            return
        try:
            value = await resource()
        except Exception:
            if self.swallow_resource_errors:
                return
            raise
        self.resources.append(value)
        if self.bound_signals > 0:
            self.bound_signals -= 1
            raise ResourceAlreadyBoundError(f"{value} is already registered")

    async def inject_code(self, endpoint: str, code: str) -> None:
        self.calls.append(("inject_code", endpoint))
        if self.inject_failures > 0:
            self.inject_failures -= 1
            raise RuntimeError("code field not found")
        self.injected.append(code)

    async def reset(self, endpoint: str) -> None:
        self.calls.append(("reset", endpoint))


class InMemoryProviderClient:
    """Scripted provider for cascade, poller and pipeline tests.

    ``buy_errors`` maps country to an exception raised by ``buy`` there;
    ``messages`` is consumed one entry per ``poll_once`` (None = waiting,
    an exception instance = raised).
    """

    def __init__(
        self,
        name: str,
        *,
        numbers: Sequence[str] = ("+15550000001",),
        available: bool | Callable[[str, str], bool] = True,
        buy_errors: dict[str, BaseException] | None = None,
        probe_error: BaseException | None = None,
        messages: Sequence[str | BaseException | None] = (),
        balance: float = 10.0,
    ) -> None:
        self.name = name
        self._numbers = list(numbers)
        self._available = available
        self._buy_errors = dict(buy_errors or {})
        self._probe_error = probe_error
        self._messages = list(messages)
        self._balance = balance
        self.calls: list[tuple[str, str]] = []

    async def get_balance(self) -> float:
        self.calls.append(("get_balance", ""))
        return self._balance

    async def check_availability(self, country: str, service: str) -> bool:
        self.calls.append(("check_availability", country))
        if self._probe_error is not None:
            raise self._probe_error
        if callable(self._available):
            return self._available(country, service)
        return self._available

    async def buy(self, country: str, service: str) -> Purchase:
        self.calls.append(("buy", country))
        error = self._buy_errors.get(country) or self._buy_errors.get("*")
        if error is not None:
            raise error
        if not self._numbers:
            raise RuntimeError("scripted provider ran out of numbers")
        number = self._numbers.pop(0)
        return Purchase(
            provider=self.name,
            external_id=f"{self.name}-{number.lstrip('+')}",
            resource_value=number,
            country=country,
            service=service,
        )

    async def mark_ready(self, external_id: str) -> None:
        self.calls.append(("mark_ready", external_id))

    async def poll_once(self, external_id: str) -> PollResult:
        self.calls.append(("poll_once", external_id))
        if not self._messages:
            return WAITING
        message = self._messages.pop(0)
        if isinstance(message, BaseException):
            raise message
        return PollResult(delivered=message)

    def classify(self, error: BaseException) -> ErrorClass:
        return classify_error(error)

    def buys(self) -> list[str]:
        return [arg for call, arg in self.calls if call == "buy"]
