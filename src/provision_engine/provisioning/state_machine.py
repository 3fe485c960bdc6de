"""Provision state machine.

Implements the canonical provisioning flow:
  PENDING -> ACQUIRING_RESOURCE -> PURCHASING -> AUTOMATING
  -> AWAITING_CODE -> INJECTING_CODE -> FINALIZING -> ACTIVE

Plus:
  any non-terminal state -> FAILED
  AUTOMATING -> PURCHASING   (compensating re-purchase, bounded per provision)

ACTIVE and FAILED are terminal: no transition leaves them. Every applied
transition is persisted through the ProvisionStore and then broadcast
through the Notifier, fire-and-forget.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Callable

from provision_engine.errors import (
    FatalError,
    InvalidStateTransition,
    ProvisionNotFoundError,
)
from provision_engine.models import Provision, ProvisionState, utc_now
from provision_engine.notifications import STATE_CHANGED, Notifier
from provision_engine.observability.logging import get_logger
from provision_engine.observability.metrics import ProvisionerMetrics
from provision_engine.protocols import ProvisionStore

S = ProvisionState

STEP_TIMEOUT_CODE = 'STEP_TIMEOUT'

PROVISIONING_SEQUENCE = (
    S.PENDING,
    S.ACQUIRING_RESOURCE,
    S.PURCHASING,
    S.AUTOMATING,
    S.AWAITING_CODE,
    S.INJECTING_CODE,
    S.FINALIZING,
    S.ACTIVE,
)

TERMINAL_STATES = frozenset({S.ACTIVE, S.FAILED})
ACTIVE_STATES = frozenset(set(S) - TERMINAL_STATES)

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        S.PENDING: frozenset({S.ACQUIRING_RESOURCE, S.FAILED}),
        S.ACQUIRING_RESOURCE: frozenset({S.PURCHASING, S.FAILED}),
        S.PURCHASING: frozenset({S.AUTOMATING, S.FAILED}),
        S.AUTOMATING: frozenset({S.AWAITING_CODE, S.PURCHASING, S.FAILED}),
        S.AWAITING_CODE: frozenset({S.INJECTING_CODE, S.FAILED}),
        S.INJECTING_CODE: frozenset({S.FINALIZING, S.FAILED}),
        S.FINALIZING: frozenset({S.ACTIVE, S.FAILED}),
        S.ACTIVE: frozenset(),
        S.FAILED: frozenset(),
    }
)

logger = get_logger(__name__)


class CompensationLimitReached(FatalError):
    code = 'COMPENSATION_LIMIT'


def apply_transition(
    provision: Provision,
    to_state: ProvisionState,
    *,
    now: datetime,
    **changes,
) -> Provision:
    """Return a new snapshot in ``to_state`` or raise InvalidStateTransition."""
    allowed = ALLOWED_TRANSITIONS.get(provision.state, frozenset())
    if to_state not in allowed:
        raise InvalidStateTransition(provision.state.value, to_state.value)
    return replace(
        provision,
        state=to_state,
        state_entered_at=now,
        updated_at=now,
        **changes,
    )


class ProvisionStateMachine:
    """Persisted, observable transitions over Provision snapshots.

    The only code path that mutates a Provision's state.
    """

    def __init__(
        self,
        store: ProvisionStore,
        *,
        notifier: Notifier | None = None,
        metrics: ProvisionerMetrics | None = None,
        max_compensations: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._notifier = notifier or Notifier()
        self._metrics = metrics
        self._max_compensations = max_compensations
        self._clock = clock

    async def load(self, provision_id: str) -> Provision:
        provision = await self._store.get(provision_id)
        if provision is None:
            raise ProvisionNotFoundError(provision_id)
        return provision

    async def advance(
        self,
        provision_id: str,
        to_state: ProvisionState,
        **changes,
    ) -> Provision:
        """Apply one allowed transition, persist it, then broadcast it."""
        current = await self.load(provision_id)
        updated = apply_transition(current, to_state, now=self._clock(), **changes)
        saved = await self._store.save(updated, expected_state=current.state)
        if saved is None:
            # Another writer moved the provision since it was loaded.
            raise InvalidStateTransition(current.state.value, to_state.value)
        self._after_transition(current.state, saved)
        return saved

    async def record_purchase(
        self,
        provision_id: str,
        *,
        resource_value: str,
        external_id: str,
        provider: str,
    ) -> Provision:
        """PURCHASING -> AUTOMATING, setting the resolved resource exactly once."""
        current = await self.load(provision_id)
        if current.state is not S.PURCHASING:
            raise InvalidStateTransition(current.state.value, S.AUTOMATING.value)
        return await self.advance(
            provision_id,
            S.AUTOMATING,
            resolved_phone=resource_value,
            external_id=external_id,
            provider=provider,
        )

    async def compensate(self, provision_id: str) -> Provision:
        """AUTOMATING -> PURCHASING after the resource was found already bound."""
        current = await self.load(provision_id)
        if current.state is not S.AUTOMATING:
            raise InvalidStateTransition(current.state.value, S.PURCHASING.value)
        if current.compensations >= self._max_compensations:
            raise CompensationLimitReached(
                f'resource already registered and the re-purchase limit '
                f'({self._max_compensations}) is spent'
            )
        if self._metrics is not None:
            self._metrics.compensations.inc()
        return await self.advance(
            provision_id,
            S.PURCHASING,
            resolved_phone=None,
            external_id=None,
            provider=None,
            compensations=current.compensations + 1,
        )

    async def fail(self, provision_id: str, error: str) -> Provision:
        """Move a non-terminal provision to FAILED with a non-empty last_error."""
        message = error.strip() or 'provisioning failed'
        return await self.advance(provision_id, S.FAILED, last_error=message)

    async def fail_if_active(self, provision_id: str, error: str) -> Provision | None:
        """Like fail(), but a no-op for provisions already terminal."""
        current = await self.load(provision_id)
        if current.state in TERMINAL_STATES:
            return None
        return await self.fail(provision_id, error)

    def _after_transition(self, from_state: ProvisionState, provision: Provision) -> None:
        if self._metrics is not None:
            self._metrics.state_transitions.labels(state=provision.state.value).inc()
        logger.info(
            'provision_state_changed',
            provision_id=provision.id,
            from_state=from_state.value,
            to_state=provision.state.value,
            last_error=provision.last_error,
        )
        self._notifier.publish(
            STATE_CHANGED,
            {
                'provision_id': provision.id,
                'from_state': from_state.value,
                'state': provision.state.value,
                'resolved_phone': provision.resolved_phone,
                'last_error': provision.last_error,
                'at': provision.state_entered_at.isoformat(),
            },
        )
