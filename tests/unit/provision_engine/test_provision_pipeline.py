"""End-to-end pipeline runs against in-memory collaborators."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass

import pytest

from provision_engine.inmemory import (
    InMemoryAutomationDriver,
    InMemoryNotificationSink,
    InMemoryProviderClient,
    InMemorySessionAcquirer,
)
from provision_engine.jobs.payloads import PROVISION_QUEUE, ProvisionJobPayload
from provision_engine.jobs.scheduler import JobFailedError
from provision_engine.models import Provision, ProvisionState, SessionStatus
from provision_engine.notifications import CODE_RECEIVED, SESSION_READY, STATE_CHANGED
from provision_engine.providers.base import ProviderFatalError, ProviderResourceInvalidError
from provision_engine.providers.registry import ProviderRegistry
from provision_engine.provisioning.pipeline import PipelineStatus, ProvisionFailedError
from provision_engine.runtime import Runtime, build_runtime
from provision_engine.service import pipeline_job_id
from provision_engine.settings import ProvisionerSettings

S = ProvisionState


@dataclass
class Harness:
    runtime: Runtime
    provider: InMemoryProviderClient
    acquirer: InMemorySessionAcquirer
    driver: InMemoryAutomationDriver
    sink: InMemoryNotificationSink

    async def provision(self, **kwargs):
        provision = await self.runtime.service.create(**kwargs)
        return provision.id

    async def finish(self, provision_id: str):
        """Wait for the pipeline job and flush background work."""
        try:
            return await self.runtime.scheduler.wait(pipeline_job_id(provision_id), timeout=5.0)
        finally:
            await self.runtime.pipeline.drain()
            await self.runtime.notifier.drain()

    async def stored(self, provision_id: str):
        return await self.runtime.stores.provisions.get(provision_id)

    async def sessions(self, provision_id: str):
        return await self.runtime.stores.sessions.list_for_provision(provision_id)

    def states(self, provision_id: str) -> list[str]:
        return [
            event['state']
            for event in self.sink.of_type(STATE_CHANGED)
            if event['provision_id'] == provision_id
        ]


def _settings(**overrides) -> ProvisionerSettings:
    values = {
        'cascade_countries': ('United States', 'Canada'),
        'probe_availability': False,
        'otp_poll_interval_seconds': 0.01,
        'otp_window_seconds': 0.05,
        'otp_max_windows': 2,
        'pipeline_deadline_seconds': 5.0,
        'injection_wait_seconds': 2.0,
        'job_max_attempts': 3,
        'job_retry_backoff_seconds': 0.0,
    }
    values.update(overrides)
    return ProvisionerSettings(**values)


@asynccontextmanager
async def running(
    *,
    provider: InMemoryProviderClient | None = None,
    driver: InMemoryAutomationDriver | None = None,
    acquirer: InMemorySessionAcquirer | None = None,
    **settings,
):
    provider = provider or InMemoryProviderClient(
        'smsman',
        numbers=['+15550000001', '+15550000002'],
        messages=['Your code: 123-456'],
    )
    driver = driver or InMemoryAutomationDriver()
    acquirer = acquirer or InMemorySessionAcquirer()
    sink = InMemoryNotificationSink()
    runtime = build_runtime(
        _settings(**settings),
        acquirer=acquirer,
        driver=driver,
        registry=ProviderRegistry([provider]),
        sink=sink,
    )
    await runtime.start()
    try:
        yield Harness(runtime, provider, acquirer, driver, sink)
    finally:
        await runtime.stop()


# ── Happy path ───────────────────────────────────────────────────────


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_provision_reaches_active(self):
        async with running() as h:
            pid = await h.provision()
            outcome = await h.finish(pid)

            provision = await h.stored(pid)
            assert outcome.status is PipelineStatus.ACTIVE
            assert outcome.resolved_phone == '+15550000001'
            assert provision.state is S.ACTIVE
            assert provision.resolved_phone == '+15550000001'
            assert provision.last_error is None

    @pytest.mark.asyncio
    async def test_active_provision_has_one_active_session(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            sessions = await h.sessions(pid)
            assert len(sessions) == 1
            assert sessions[0].is_active is True
            assert sessions[0].status is SessionStatus.ACTIVE
            assert h.acquirer.live == {sessions[0].handle}

    @pytest.mark.asyncio
    async def test_exactly_one_purchase_is_made_and_bound(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            assert h.provider.buys() == ['United States']
            assert ('mark_ready', 'smsman-15550000001') in h.provider.calls
            reservation = await h.runtime.ledger.get('+15550000001')
            assert reservation.is_used is True
            assert reservation.provision_id == pid

    @pytest.mark.asyncio
    async def test_code_is_logged_and_injected(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            attempts = await h.runtime.stores.otp_attempts.list_for_provision(pid)
            assert [(a.raw_text, a.code) for a in attempts] == [('Your code: 123-456', '123456')]
            assert h.driver.injected == ['123456']

    @pytest.mark.asyncio
    async def test_every_transition_is_broadcast_in_order(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            assert h.states(pid) == [
                'ACQUIRING_RESOURCE',
                'PURCHASING',
                'AUTOMATING',
                'AWAITING_CODE',
                'INJECTING_CODE',
                'FINALIZING',
                'ACTIVE',
            ]
            assert len(h.sink.of_type(CODE_RECEIVED)) == 1
            ready = h.sink.of_type(SESSION_READY)
            assert ready[0]['resolved_phone'] == '+15550000001'

    @pytest.mark.asyncio
    async def test_job_reports_full_progress(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            assert h.runtime.scheduler.get(pipeline_job_id(pid)).progress == 100

    @pytest.mark.asyncio
    async def test_country_preference_is_used(self):
        async with running() as h:
            pid = await h.provision(country_preference='Canada')
            await h.finish(pid)

            assert h.provider.buys() == ['Canada']
            assert h.driver.calls[0][0] == 'register'

    @pytest.mark.asyncio
    async def test_unavailable_preference_fails_instead_of_switching_country(self):
        provider = InMemoryProviderClient(
            'smsman', buy_errors={'France': ProviderFatalError('smsman', 'no numbers')}
        )
        async with running(provider=provider) as h:
            pid = await h.provision(country_preference='France')
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert provision.resolved_phone is None
            assert provider.buys() == ['France']


# ── Compensation ─────────────────────────────────────────────────────


class TestCompensation:
    @pytest.mark.asyncio
    async def test_refused_number_is_replaced_once(self):
        async with running(driver=InMemoryAutomationDriver(bound_signals=1)) as h:
            pid = await h.provision()
            await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.ACTIVE
            assert provision.resolved_phone == '+15550000002'
            assert provision.compensations == 1
            assert len(h.provider.buys()) == 2
            assert ('reset', h.driver.calls[0][1]) in h.driver.calls

    @pytest.mark.asyncio
    async def test_refused_number_stays_retired(self):
        async with running(driver=InMemoryAutomationDriver(bound_signals=1)) as h:
            pid = await h.provision()
            await h.finish(pid)

            refused = await h.runtime.ledger.get('+15550000001')
            assert refused.is_used is True
            assert refused.provision_id == pid

    @pytest.mark.asyncio
    async def test_compensating_loop_is_visible_in_transitions(self):
        async with running(driver=InMemoryAutomationDriver(bound_signals=1)) as h:
            pid = await h.provision()
            await h.finish(pid)

            assert h.states(pid)[:5] == [
                'ACQUIRING_RESOURCE',
                'PURCHASING',
                'AUTOMATING',
                'PURCHASING',
                'AUTOMATING',
            ]

    @pytest.mark.asyncio
    async def test_second_refusal_fails_the_provision(self):
        provider = InMemoryProviderClient(
            'smsman', numbers=['+15550000001', '+15550000002', '+15550000003']
        )
        driver = InMemoryAutomationDriver(bound_signals=2)
        async with running(provider=provider, driver=driver) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 're-purchase limit' in provision.last_error
            assert len(provider.buys()) == 2


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_cascade_exhaustion_fails_with_aggregate_error(self):
        provider = InMemoryProviderClient(
            'smsman', buy_errors={'*': ProviderFatalError('smsman', 'no balance')}
        )
        async with running(provider=provider) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError) as exc_info:
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 'no provider could supply a resource' in provision.last_error
            assert 'no balance' in provision.last_error
            assert isinstance(exc_info.value.__cause__, ProvisionFailedError)

    @pytest.mark.asyncio
    async def test_failed_provision_releases_its_session(self):
        provider = InMemoryProviderClient(
            'smsman', buy_errors={'*': ProviderFatalError('smsman', 'no balance')}
        )
        async with running(provider=provider) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            sessions = await h.sessions(pid)
            assert [s.status for s in sessions] == [SessionStatus.RELEASED]
            assert sessions[0].is_active is False
            assert ('release', sessions[0].handle) in h.acquirer.calls
            assert h.runtime.ports.allocated() == {}

    @pytest.mark.asyncio
    async def test_deadline_fails_whatever_step_is_in_flight(self):
        driver = InMemoryAutomationDriver(register_delay=5.0)
        async with running(driver=driver, pipeline_deadline_seconds=0.05) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 'deadline' in provision.last_error
            assert h.provider.buys() == []

    @pytest.mark.asyncio
    async def test_code_timeout_fails_the_provision(self):
        provider = InMemoryProviderClient('smsman', messages=[])
        async with running(provider=provider) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 'no verification code' in provision.last_error
            assert provision.resolved_phone == '+15550000001'

    @pytest.mark.asyncio
    async def test_invalidated_number_fails_without_rebuying(self):
        provider = InMemoryProviderClient(
            'smsman',
            numbers=['+15550000001', '+15550000002'],
            messages=[ProviderResourceInvalidError('smsman', 'cancelled')],
        )
        async with running(provider=provider) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            assert (await h.stored(pid)).state is S.FAILED
            assert len(provider.buys()) == 1

    @pytest.mark.asyncio
    async def test_automation_that_never_asks_for_a_number_fails(self):
        async with running(driver=InMemoryAutomationDriver(skip_resource=True)) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert 'without requesting a resource' in provision.last_error
            assert h.provider.buys() == []

    @pytest.mark.asyncio
    async def test_swallowed_purchase_failure_keeps_its_reasons(self):
        provider = InMemoryProviderClient(
            'smsman', buy_errors={'*': ProviderFatalError('smsman', 'no balance')}
        )
        driver = InMemoryAutomationDriver(swallow_resource_errors=True)
        async with running(provider=provider, driver=driver) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 'no provider could supply a resource' in provision.last_error
            assert 'no balance' in provision.last_error
            assert 'without requesting a resource' not in provision.last_error

    @pytest.mark.asyncio
    async def test_acquire_failure_leaves_no_session(self):
        async with running(acquirer=InMemorySessionAcquirer(acquire_fails=True)) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            assert (await h.stored(pid)).state is S.FAILED
            assert await h.sessions(pid) == []
            assert h.runtime.ports.allocated() == {}

    @pytest.mark.asyncio
    async def test_failed_provision_never_reports_stack_traces(self):
        async with running(acquirer=InMemorySessionAcquirer(acquire_fails=True)) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            last_error = (await h.stored(pid)).last_error
            assert last_error == 'RuntimeError: container start failed'
            assert 'Traceback' not in last_error


# ── Code injection ───────────────────────────────────────────────────


class TestCodeInjection:
    @pytest.mark.asyncio
    async def test_flaky_injection_is_retried(self):
        async with running(driver=InMemoryAutomationDriver(inject_failures=1)) as h:
            pid = await h.provision()
            await h.finish(pid)

            assert (await h.stored(pid)).state is S.ACTIVE
            inject_calls = [c for c in h.driver.calls if c[0] == 'inject_code']
            assert len(inject_calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_injection_fails_the_provision(self):
        driver = InMemoryAutomationDriver(inject_failures=5)
        async with running(driver=driver, job_max_attempts=2) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)

            provision = await h.stored(pid)
            assert provision.state is S.FAILED
            assert 'code injection failed' in provision.last_error
            sessions = await h.sessions(pid)
            assert sessions[0].status is SessionStatus.RELEASED


# ── Redelivery ───────────────────────────────────────────────────────


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_redelivery_after_active_is_rejected(self):
        async with running() as h:
            pid = await h.provision()
            await h.finish(pid)

            outcome = await h.runtime.pipeline.run(ProvisionJobPayload(provision_id=pid))

            assert outcome.status is PipelineStatus.DUPLICATE
            assert len(await h.sessions(pid)) == 1
            assert [c for c in h.acquirer.calls if c[0] == 'acquire'] == [('acquire', pid)]
            assert len(h.provider.buys()) == 1
            assert (await h.stored(pid)).state is S.ACTIVE

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_does_not_touch_state(self):
        async with running(acquirer=InMemorySessionAcquirer(acquire_fails=True)) as h:
            pid = await h.provision()
            with pytest.raises(JobFailedError):
                await h.finish(pid)
            before = await h.stored(pid)

            outcome = await h.runtime.pipeline.run(ProvisionJobPayload(provision_id=pid))

            assert outcome.status is PipelineStatus.DUPLICATE
            assert await h.stored(pid) == before

    @pytest.mark.asyncio
    async def test_camel_case_payload_on_the_queue(self):
        async with running() as h:
            provision = await h.runtime.stores.provisions.create(Provision(id='p-wire'))
            job = await h.runtime.scheduler.enqueue(
                PROVISION_QUEUE,
                {'provisionId': provision.id, 'countryPreference': 'Canada'},
            )
            outcome = await h.runtime.scheduler.wait(job.id, timeout=5.0)

            assert outcome.status is PipelineStatus.ACTIVE
            assert h.provider.buys() == ['Canada']
