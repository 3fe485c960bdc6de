"""Resource ledger: the durable record of every purchased resource.

Entries are keyed by resource value. Recording the same purchase twice is
a merge, never a second row. Once bound to a provision an entry is never
rebound; entries that stay unbound past the orphan TTL are reclaimable.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from provision_engine.errors import ResourceConflictError
from provision_engine.models import ResourceReservation, utc_now
from provision_engine.observability.logging import get_logger
from provision_engine.protocols import ReservationStore
from provision_engine.providers.base import Purchase

logger = get_logger(__name__)


class ResourceLedger:
    def __init__(
        self,
        store: ReservationStore,
        *,
        orphan_ttl: timedelta = timedelta(minutes=20),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._orphan_ttl = orphan_ttl
        self._clock = clock

    @property
    def orphan_ttl(self) -> timedelta:
        return self._orphan_ttl

    async def get(self, resource_value: str) -> ResourceReservation | None:
        return await self._store.get(resource_value)

    async def record(self, purchase: Purchase) -> ResourceReservation:
        """Upsert the purchase keyed by its resource value."""
        existing = await self._store.get(purchase.resource_value)
        if existing is not None and existing.is_used:
            raise ResourceConflictError(purchase.resource_value, existing.provision_id)

        reservation = await self._store.upsert(
            ResourceReservation(
                resource_value=purchase.resource_value,
                external_id=purchase.external_id,
                provider=purchase.provider,
                country=purchase.country,
                service=purchase.service,
                created_at=existing.created_at if existing else self._clock(),
            )
        )
        logger.info(
            'resource_recorded',
            resource_value=reservation.resource_value,
            provider=reservation.provider,
            external_id=reservation.external_id,
            merged=existing is not None,
        )
        return reservation

    async def bind(self, resource_value: str, provision_id: str) -> ResourceReservation:
        """Mark the entry used by ``provision_id``. Binding is one-way."""
        claimed = await self._store.claim(resource_value, provision_id, self._clock())
        if claimed is not None:
            return claimed

        existing = await self._store.get(resource_value)
        if existing is not None and existing.provision_id == provision_id:
            return existing
        raise ResourceConflictError(
            resource_value, existing.provision_id if existing else None
        )

    async def discard(self, resource_value: str, provision_id: str) -> ResourceReservation | None:
        """Retire a bound resource the target service refused.

        The entry keeps its binding (it is never rebound); this only records
        the decision so the provision can buy a replacement.
        """
        existing = await self._store.get(resource_value)
        if existing is not None and not existing.is_used:
            existing = await self._store.claim(resource_value, provision_id, self._clock())
        logger.warning(
            'resource_discarded',
            resource_value=resource_value,
            provision_id=provision_id,
        )
        return existing

    async def list_orphans(self, *, now: datetime | None = None) -> list[ResourceReservation]:
        """Unbound entries older than the orphan TTL."""
        cutoff = (now or self._clock()) - self._orphan_ttl
        return await self._store.list_unused(cutoff)

    async def reclaim(self, resource_value: str) -> bool:
        """Delete an orphaned entry. Bound entries are never deleted."""
        existing = await self._store.get(resource_value)
        if existing is None or existing.is_used:
            return False
        return await self._store.delete(resource_value)
