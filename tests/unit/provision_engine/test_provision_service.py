"""Caller surface and runtime wiring."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from provision_engine.db.stores import PostgrestProvisionStore
from provision_engine.errors import ProvisionNotFoundError
from provision_engine.inmemory import (
    InMemoryAutomationDriver,
    InMemoryNotificationSink,
    InMemoryProvisionStore,
    InMemorySessionAcquirer,
)
from provision_engine.jobs.payloads import CODE_INJECTION_QUEUE, PROVISION_QUEUE, ProvisionJobPayload
from provision_engine.jobs.scheduler import JobScheduler
from provision_engine.models import ProvisionState
from provision_engine.notifications import HttpBroadcastSink
from provision_engine.runtime import ConfigurationError, build_runtime
from provision_engine.service import ProvisionNotRestartable, ProvisionService, pipeline_job_id
from provision_engine.settings import ProvisionerSettings

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _ignore(payload, ctx):
    return None


@pytest.fixture
def scheduler():
    sched = JobScheduler()
    sched.register_queue(PROVISION_QUEUE, _ignore)
    return sched


@pytest.fixture
def service(provision_store, scheduler):
    return ProvisionService(provision_store, scheduler, clock=lambda: T0)


# ── ProvisionService ─────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_persists_pending_and_enqueues_one_job(self, service, provision_store, scheduler):
        provision = await service.create(country_preference=' Canada ', link_to_web=True)

        assert provision.state is ProvisionState.PENDING
        assert provision.country_preference == 'Canada'
        assert provision.link_to_web is True
        assert provision.state_entered_at == T0
        assert await provision_store.get(provision.id) == provision

        job = scheduler.get(pipeline_job_id(provision.id))
        assert job.queue == PROVISION_QUEUE
        assert isinstance(job.payload, ProvisionJobPayload)
        assert job.payload.provision_id == provision.id
        assert scheduler.pending(PROVISION_QUEUE) == 1

    @pytest.mark.asyncio
    async def test_blank_hints_are_stored_as_none(self, service):
        provision = await service.create(country_preference='', service_selector='  ')

        assert provision.country_preference is None
        assert provision.service_selector is None

    @pytest.mark.asyncio
    async def test_each_create_is_a_new_provision(self, service):
        first = await service.create()
        second = await service.create()

        assert first.id != second.id


class TestRestart:
    @pytest.mark.asyncio
    async def test_failed_provision_spawns_a_fresh_one(self, service, make_provision, provision_store):
        failed = await make_provision(
            state=ProvisionState.FAILED,
            country_preference='France',
            service_selector='whatsapp',
            last_error='CODE_TIMEOUT: no code',
        )

        restarted = await service.restart(failed.id)

        assert restarted.id != failed.id
        assert restarted.state is ProvisionState.PENDING
        assert restarted.country_preference == 'France'
        assert restarted.service_selector == 'whatsapp'
        assert await provision_store.get(failed.id) == failed

    @pytest.mark.asyncio
    @pytest.mark.parametrize('state', [ProvisionState.PENDING, ProvisionState.AWAITING_CODE, ProvisionState.ACTIVE])
    async def test_only_failed_provisions_restart(self, service, make_provision, state):
        provision = await make_provision(state=state)

        with pytest.raises(ProvisionNotRestartable) as exc_info:
            await service.restart(provision.id)

        assert exc_info.value.state is state

    @pytest.mark.asyncio
    async def test_unknown_provision(self, service):
        with pytest.raises(ProvisionNotFoundError):
            await service.restart('ghost')
        with pytest.raises(ProvisionNotFoundError):
            await service.get('ghost')


# ── build_runtime ────────────────────────────────────────────────────


def _collaborators() -> dict:
    return {'acquirer': InMemorySessionAcquirer(), 'driver': InMemoryAutomationDriver()}


class TestBuildRuntime:
    def test_invalid_settings_are_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            build_runtime(ProvisionerSettings(environment='production'), **_collaborators())

        assert exc_info.value.problems

    @pytest.mark.asyncio
    async def test_local_defaults_use_memory_stores(self):
        runtime = build_runtime(ProvisionerSettings(), **_collaborators())
        try:
            assert isinstance(runtime.stores.provisions, InMemoryProvisionStore)
            assert runtime.registry.names() == ()
            assert runtime.owns_http_client is True
        finally:
            await runtime.stop()

        assert runtime.http_client.is_closed

    @pytest.mark.asyncio
    async def test_configured_credentials_and_postgrest(self):
        settings = ProvisionerSettings(
            environment='production',
            smsman_token='tok',
            onlinesim_api_key='key',
            provider_order=('smsman', 'onlinesim'),
            postgrest_url='https://db.example.test/rest/v1',
            postgrest_service_key='svc',
            broadcast_url='https://hooks.example.test/provisions',
        )
        async with httpx.AsyncClient() as http_client:
            runtime = build_runtime(settings, http_client=http_client, **_collaborators())

            assert runtime.registry.names() == ('smsman', 'onlinesim')
            assert isinstance(runtime.stores.provisions, PostgrestProvisionStore)
            assert isinstance(runtime.notifier._sink, HttpBroadcastSink)

            await runtime.stop()
            assert not http_client.is_closed

    @pytest.mark.asyncio
    async def test_both_queues_are_registered(self):
        runtime = build_runtime(
            ProvisionerSettings(),
            sink=InMemoryNotificationSink(),
            **_collaborators(),
        )
        try:
            provision = await runtime.service.create()
            assert runtime.scheduler.pending(PROVISION_QUEUE) == 1
            assert runtime.scheduler.get(pipeline_job_id(provision.id)) is not None
            await runtime.scheduler.enqueue(
                CODE_INJECTION_QUEUE, {'provisionId': provision.id, 'externalId': 'e', 'code': '1'}
            )
            assert runtime.scheduler.pending(CODE_INJECTION_QUEUE) == 1
        finally:
            await runtime.stop()
