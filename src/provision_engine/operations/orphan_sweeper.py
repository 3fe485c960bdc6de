"""Reclaim reservations that were bought but never bound to a provision.

A reservation stays unbound when its pipeline died between purchase and
bind. Once older than the ledger's orphan TTL it is reclaimable. With
``verify=True`` the owning provider is asked first: only a resource the
provider reports as invalid is reclaimed, and any other provider error
keeps the record for the next sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from provision_engine.models import ResourceReservation, utc_now
from provision_engine.observability.logging import get_logger
from provision_engine.providers.base import ProviderResourceInvalidError
from provision_engine.providers.registry import ProviderRegistry
from provision_engine.provisioning.ledger import ResourceLedger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class OrphanSweepReport:
    reclaimed: tuple[ResourceReservation, ...]
    kept: tuple[ResourceReservation, ...]
    sweep_ts: datetime

    @property
    def reclaimed_count(self) -> int:
        return len(self.reclaimed)


class OrphanReservationSweeper:
    def __init__(
        self,
        ledger: ResourceLedger,
        registry: ProviderRegistry,
        *,
        verify: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._verify = verify
        self._clock = clock

    async def sweep(self, *, now: datetime | None = None) -> OrphanSweepReport:
        now = now or self._clock()
        reclaimed: list[ResourceReservation] = []
        kept: list[ResourceReservation] = []

        for reservation in await self._ledger.list_orphans(now=now):
            if self._verify and not await self._confirmed_invalid(reservation):
                kept.append(reservation)
                continue
            if await self._ledger.reclaim(reservation.resource_value):
                reclaimed.append(reservation)
                logger.info(
                    'orphan_reservation_reclaimed',
                    resource_value=reservation.resource_value,
                    provider=reservation.provider,
                    external_id=reservation.external_id,
                )
            else:
                # Bound between listing and reclaim.
                kept.append(reservation)

        return OrphanSweepReport(reclaimed=tuple(reclaimed), kept=tuple(kept), sweep_ts=now)

    async def _confirmed_invalid(self, reservation: ResourceReservation) -> bool:
        if reservation.provider not in self._registry:
            logger.info('orphan_provider_unconfigured', provider=reservation.provider)
            return True
        client = self._registry.get(reservation.provider)
        try:
            await client.poll_once(reservation.external_id)
        except ProviderResourceInvalidError:
            return True
        except Exception as exc:
            logger.warning(
                'orphan_verify_failed',
                provider=reservation.provider,
                external_id=reservation.external_id,
                error=str(exc),
            )
            return False
        return False
