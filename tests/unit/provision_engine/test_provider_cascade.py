"""Provider cascade: ordering, single purchase, rate-limit skipping, aggregate errors."""

from __future__ import annotations

import httpx
import pytest

from provision_engine.errors import CascadeExhaustedError, ErrorClass, ResourceConflictError
from provision_engine.inmemory import InMemoryProviderClient, InMemoryReservationStore
from provision_engine.observability.metrics import ProvisionerMetrics
from provision_engine.providers.base import (
    ProviderFatalError,
    ProviderRateLimitedError,
)
from provision_engine.providers.registry import ProviderRegistry
from provision_engine.provisioning.cascade import CascadeCandidate, ProviderCascade
from provision_engine.provisioning.ledger import ResourceLedger

COUNTRIES = ('United States', 'Canada')


def _cascade(*clients, probe=False, metrics=None, countries=COUNTRIES):
    store = InMemoryReservationStore()
    registry = ProviderRegistry(clients)
    cascade = ProviderCascade(
        registry,
        ResourceLedger(store),
        default_countries=countries,
        probe_availability=probe,
        metrics=metrics,
    )
    return cascade, store


def _total_buys(*clients) -> int:
    return sum(len(client.buys()) for client in clients)


# ── Candidate list ───────────────────────────────────────────────────


class TestBuildCandidates:
    def test_defaults_cover_every_provider_per_country(self):
        a, b = InMemoryProviderClient('a'), InMemoryProviderClient('b')
        cascade, _ = _cascade(a, b)

        candidates = cascade.build_candidates()

        assert [(c.provider, c.country) for c in candidates] == [
            ('a', 'United States'),
            ('b', 'United States'),
            ('a', 'Canada'),
            ('b', 'Canada'),
        ]
        assert not any(c.explicit for c in candidates)

    def test_preference_replaces_the_default_countries(self):
        a, b = InMemoryProviderClient('a'), InMemoryProviderClient('b')
        cascade, _ = _cascade(a, b)

        candidates = cascade.build_candidates('France')

        assert candidates == [
            CascadeCandidate('a', 'France', True),
            CascadeCandidate('b', 'France', True),
        ]

    def test_preference_is_trimmed(self):
        a = InMemoryProviderClient('a')
        cascade, _ = _cascade(a)

        assert cascade.build_candidates(' Canada ') == [CascadeCandidate('a', 'Canada', True)]

    def test_blank_preference_is_ignored(self):
        a = InMemoryProviderClient('a')
        cascade, _ = _cascade(a)

        assert cascade.build_candidates('   ') == cascade.build_candidates()


# ── Purchase ─────────────────────────────────────────────────────────


class TestPurchase:
    @pytest.mark.asyncio
    async def test_first_success_stops_the_cascade(self):
        a = InMemoryProviderClient('a', numbers=['+15550000001'])
        b = InMemoryProviderClient('b', numbers=['+15550000002'])
        cascade, store = _cascade(a, b)

        reservation = await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert reservation.resource_value == '+15550000001'
        assert reservation.provider == 'a'
        assert _total_buys(a, b) == 1
        assert await store.get('+15550000001') is not None

    @pytest.mark.asyncio
    async def test_rate_limited_then_success_records_one_reservation(self):
        a = InMemoryProviderClient('a', buy_errors={'*': ProviderRateLimitedError('a', 'slow down')})
        b = InMemoryProviderClient('b', numbers=['+15550000002'])
        cascade, store = _cascade(a, b)

        reservation = await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert reservation.provider == 'b'
        assert len(await store.list_unused(reservation.created_at.replace(year=2100))) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_provider_is_skipped_for_the_rest_of_the_run(self):
        a = InMemoryProviderClient('a', buy_errors={'*': ProviderRateLimitedError('a', 'slow down')})
        b = InMemoryProviderClient(
            'b', buy_errors={'United States': httpx.ConnectError('down')}, numbers=['+15550000002']
        )
        cascade, _ = _cascade(a, b)

        reservation = await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert reservation.country == 'Canada'
        assert a.buys() == ['United States']
        assert b.buys() == ['United States', 'Canada']

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_cached_across_runs(self):
        a = InMemoryProviderClient(
            'a',
            numbers=['+15550000001'],
            buy_errors={'United States': ProviderRateLimitedError('a', 'slow down')},
        )
        cascade, _ = _cascade(a, countries=('United States',))

        with pytest.raises(CascadeExhaustedError):
            await cascade.purchase(cascade.build_candidates(), service='whatsapp')
        reservation = await cascade.purchase([CascadeCandidate('a', 'Canada')], service='whatsapp')

        assert reservation.country == 'Canada'

    @pytest.mark.asyncio
    async def test_fatal_on_explicit_candidate_continues_with_the_next_provider(self):
        a = InMemoryProviderClient('a', buy_errors={'France': ProviderFatalError('a', 'unknown country')})
        b = InMemoryProviderClient('b', numbers=['+33600000002'])
        cascade, _ = _cascade(a, b)

        reservation = await cascade.purchase(cascade.build_candidates('France'), service='whatsapp')

        assert (reservation.provider, reservation.country) == ('b', 'France')
        assert a.buys() == ['France']

    @pytest.mark.asyncio
    async def test_exhausted_preference_never_buys_elsewhere(self):
        a = InMemoryProviderClient('a', available=lambda country, service: country != 'France')
        b = InMemoryProviderClient('b', buy_errors={'France': ProviderFatalError('b', 'unknown country')})
        cascade, store = _cascade(a, b, probe=True)

        with pytest.raises(CascadeExhaustedError) as exc_info:
            await cascade.purchase(cascade.build_candidates('France'), service='whatsapp')

        assert {f.country for f in exc_info.value.failures} == {'France'}
        assert [f.provider for f in exc_info.value.failures] == ['a', 'b']
        assert a.buys() == []
        assert b.buys() == ['France']
        assert await store.get('+15550000001') is None

    @pytest.mark.asyncio
    async def test_exhaustion_aggregates_every_failure(self):
        a = InMemoryProviderClient('a', buy_errors={'*': ProviderFatalError('a', 'no balance')})
        b = InMemoryProviderClient('b', buy_errors={'*': httpx.ReadTimeout('slow')})
        cascade, store = _cascade(a, b)

        with pytest.raises(CascadeExhaustedError) as exc_info:
            await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        failures = exc_info.value.failures
        assert len(failures) == 4
        assert {f.error_class for f in failures} == {ErrorClass.FATAL, ErrorClass.TRANSIENT}
        assert 'no balance' in str(exc_info.value)
        assert await store.get('+15550000001') is None

    @pytest.mark.asyncio
    async def test_skipped_candidates_appear_in_the_aggregate(self):
        a = InMemoryProviderClient('a', buy_errors={'*': ProviderRateLimitedError('a', '429')})
        cascade, _ = _cascade(a)

        with pytest.raises(CascadeExhaustedError) as exc_info:
            await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert [f.error_class for f in exc_info.value.failures] == [
            ErrorClass.RATE_LIMITED,
            ErrorClass.RATE_LIMITED,
        ]
        assert len(a.buys()) == 1

    @pytest.mark.asyncio
    async def test_empty_candidate_list_is_an_error(self):
        cascade, _ = _cascade(InMemoryProviderClient('a'))

        with pytest.raises(CascadeExhaustedError, match='no candidates'):
            await cascade.purchase([], service='whatsapp')

    @pytest.mark.asyncio
    async def test_purchase_of_a_bound_number_is_a_conflict(self):
        a = InMemoryProviderClient('a', numbers=['+15550000001', '+15550000001'])
        cascade, store = _cascade(a)
        first = await cascade.purchase(cascade.build_candidates(), service='whatsapp')
        await store.claim(first.resource_value, 'prov-1', first.created_at)

        with pytest.raises(ResourceConflictError):
            await cascade.purchase(cascade.build_candidates(), service='whatsapp')

    @pytest.mark.asyncio
    async def test_purchase_outcomes_are_counted(self):
        metrics = ProvisionerMetrics()
        a = InMemoryProviderClient('a', buy_errors={'United States': ProviderFatalError('a', 'x')})
        cascade, _ = _cascade(a, metrics=metrics)

        await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        sample = metrics.registry.get_sample_value
        assert sample('provisioner_purchase_attempts_total', {'provider': 'a', 'outcome': 'fatal'}) == 1.0
        assert sample('provisioner_purchase_attempts_total', {'provider': 'a', 'outcome': 'success'}) == 1.0


# ── Availability probe ───────────────────────────────────────────────


class TestAvailabilityProbe:
    @pytest.mark.asyncio
    async def test_no_stock_skips_without_buying(self):
        a = InMemoryProviderClient('a', available=lambda country, service: country == 'Canada')
        cascade, _ = _cascade(a, probe=True)

        reservation = await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert reservation.country == 'Canada'
        assert a.buys() == ['Canada']

    @pytest.mark.asyncio
    async def test_probe_error_counts_as_transient(self):
        a = InMemoryProviderClient('a', probe_error=httpx.ConnectError('down'))
        b = InMemoryProviderClient('b', numbers=['+15550000002'])
        cascade, _ = _cascade(a, b, probe=True)

        reservation = await cascade.purchase(cascade.build_candidates(), service='whatsapp')

        assert reservation.provider == 'b'
        assert a.buys() == []
