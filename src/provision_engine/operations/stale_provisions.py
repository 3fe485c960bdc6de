"""Stale provision detector and repair action.

Scans non-terminal provisions for those that have sat in one state longer
than that state's timeout and fails them through the state machine with a
STEP_TIMEOUT error. A worker that crashed mid-pipeline leaves its provision
in flight forever otherwise: the duplicate guard rejects every redelivery
of the job because the provision is no longer PENDING.

Usage::

    detector = StaleProvisionDetector(settings.state_timeout_seconds)
    report = detector.sweep(await store.list_active(), now=utc_now())
    repaired = await detector.repair(report, state_machine)

PENDING provisions are skipped: they have not been picked up yet and the
scheduler still owns them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Sequence

from provision_engine.errors import InvalidStateTransition
from provision_engine.models import Provision, ProvisionState
from provision_engine.observability.logging import get_logger
from provision_engine.provisioning.state_machine import (
    STEP_TIMEOUT_CODE,
    TERMINAL_STATES,
    ProvisionStateMachine,
)
from provision_engine.settings import DEFAULT_STATE_TIMEOUT_SECONDS

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class StaleProvisionEntry:
    """A single stale provision and how far past its timeout it is."""

    provision: Provision
    elapsed_seconds: float
    timeout_seconds: int

    @property
    def error_detail(self) -> str:
        return (
            f'{STEP_TIMEOUT_CODE}: step {self.provision.state.value} exceeded timeout '
            f'({int(self.elapsed_seconds)}s > {self.timeout_seconds}s)'
        )


@dataclass(frozen=True, slots=True)
class SweepReport:
    """Result of a stale-provision sweep.

    Attributes:
        stale: Provisions that exceeded their state timeout.
        healthy: In-flight provisions still within timeout.
        skipped: Terminal or PENDING provisions, and states with no timeout.
        sweep_ts: Timestamp of the sweep.
    """

    stale: tuple[StaleProvisionEntry, ...]
    healthy: tuple[Provision, ...]
    skipped: tuple[Provision, ...]
    sweep_ts: datetime

    @property
    def stale_count(self) -> int:
        return len(self.stale)

    @property
    def total_scanned(self) -> int:
        return len(self.stale) + len(self.healthy) + len(self.skipped)

    @property
    def stale_by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.stale:
            state = entry.provision.state.value
            counts[state] = counts.get(state, 0) + 1
        return counts


class StaleProvisionDetector:
    """Detects stuck provisions and fails them.

    Args:
        state_timeouts: Per-state timeout in seconds keyed by state value.
            Defaults to the built-in state timeouts.
    """

    def __init__(self, state_timeouts: Mapping[str, int] | None = None) -> None:
        self._state_timeouts = state_timeouts or DEFAULT_STATE_TIMEOUT_SECONDS

    def sweep(self, provisions: Sequence[Provision], *, now: datetime) -> SweepReport:
        """Categorize provisions without mutating anything."""
        if now.tzinfo is None:
            raise ValueError('now must be timezone-aware')

        stale: list[StaleProvisionEntry] = []
        healthy: list[Provision] = []
        skipped: list[Provision] = []

        for provision in provisions:
            if provision.state in TERMINAL_STATES or provision.state is ProvisionState.PENDING:
                skipped.append(provision)
                continue

            timeout_seconds = self._state_timeouts.get(provision.state.value)
            if timeout_seconds is None:
                skipped.append(provision)
                continue

            elapsed = (now - provision.state_entered_at).total_seconds()
            if elapsed > timeout_seconds:
                stale.append(
                    StaleProvisionEntry(
                        provision=provision,
                        elapsed_seconds=elapsed,
                        timeout_seconds=timeout_seconds,
                    )
                )
            else:
                healthy.append(provision)

        return SweepReport(
            stale=tuple(stale),
            healthy=tuple(healthy),
            skipped=tuple(skipped),
            sweep_ts=now,
        )

    async def repair(
        self,
        report: SweepReport,
        state_machine: ProvisionStateMachine,
    ) -> list[Provision]:
        """Fail every stale provision; returns the ones actually moved.

        A provision that moved on since the sweep (finished, or advanced to
        another state) is left alone.
        """
        repaired: list[Provision] = []
        for entry in report.stale:
            before = entry.provision
            current = await state_machine.load(before.id)
            if current.state is not before.state or current.state_entered_at != before.state_entered_at:
                logger.info('stale_provision_moved_on', provision_id=before.id, state=current.state.value)
                continue
            try:
                failed = await state_machine.fail(before.id, entry.error_detail)
            except InvalidStateTransition:
                logger.info('stale_provision_raced', provision_id=before.id)
                continue
            logger.warning(
                'stale_provision_failed',
                provision_id=before.id,
                state=before.state.value,
                elapsed_seconds=int(entry.elapsed_seconds),
                timeout_seconds=entry.timeout_seconds,
            )
            repaired.append(failed)
        return repaired
