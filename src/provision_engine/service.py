"""Caller surface: create, restart and look up provisions.

Creating a provision persists it PENDING and enqueues exactly one pipeline
job keyed ``provision:{id}``, so enqueueing the same provision twice from
this process is a no-op. A FAILED provision is terminal: ``restart`` never
touches it and instead creates a fresh PENDING provision with the same
selection hints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from .errors import ProvisionNotFoundError
from .jobs.payloads import PROVISION_QUEUE, ProvisionJobPayload
from .jobs.scheduler import JobScheduler
from .models import Provision, ProvisionState, new_id, utc_now
from .observability.logging import get_logger
from .protocols import ProvisionStore

logger = get_logger(__name__)


class ProvisionNotRestartable(ValueError):
    """Raised when restart() targets a provision that has not failed."""

    def __init__(self, provision_id: str, state: ProvisionState) -> None:
        self.provision_id = provision_id
        self.state = state
        super().__init__(
            f'provision {provision_id} is {state.value}; only FAILED provisions can be restarted'
        )


def pipeline_job_id(provision_id: str) -> str:
    return f'provision:{provision_id}'


class ProvisionService:
    def __init__(
        self,
        store: ProvisionStore,
        scheduler: JobScheduler,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._clock = clock

    async def create(
        self,
        *,
        country_preference: str | None = None,
        service_selector: str | None = None,
        link_to_web: bool = False,
    ) -> Provision:
        payload = ProvisionJobPayload(
            provision_id=new_id(),
            country_preference=country_preference,
            service_selector=service_selector,
            link_to_web=link_to_web,
        )
        now = self._clock()
        provision = await self._store.create(
            Provision(
                id=payload.provision_id,
                country_preference=payload.country_preference,
                service_selector=payload.service_selector,
                link_to_web=payload.link_to_web,
                created_at=now,
                updated_at=now,
                state_entered_at=now,
            )
        )
        await self._scheduler.enqueue(
            PROVISION_QUEUE, payload, job_id=pipeline_job_id(provision.id)
        )
        logger.info('provision_created', provision_id=provision.id)
        return provision

    async def restart(self, provision_id: str) -> Provision:
        """Create a new provision from a FAILED one's hints."""
        failed = await self.get(provision_id)
        if failed.state is not ProvisionState.FAILED:
            raise ProvisionNotRestartable(provision_id, failed.state)
        provision = await self.create(
            country_preference=failed.country_preference,
            service_selector=failed.service_selector,
            link_to_web=failed.link_to_web,
        )
        logger.info('provision_restarted', provision_id=provision.id, restarted_from=provision_id)
        return provision

    async def get(self, provision_id: str) -> Provision:
        provision = await self._store.get(provision_id)
        if provision is None:
            raise ProvisionNotFoundError(provision_id)
        return provision
