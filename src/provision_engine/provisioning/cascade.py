"""Ordered fallback across (provider, country) candidates.

For each candidate in order:

1. Skip it when its provider was rate-limited earlier in this run.
2. Probe availability (optional). A probe error counts as transient; a
   negative answer moves on without buying.
3. Call ``buy`` exactly once. The first success is recorded in the ledger
   and returned; no further candidate is touched.
4. On failure, classify it with the provider's ``classify()``. Rate limiting
   marks the provider skipped for the rest of the run; anything else moves
   on to the next candidate.

A caller preference yields candidates for that country only, one per
provider; the built-in country list is used only when no preference is
given. When every candidate fails the run raises CascadeExhaustedError with
one entry per candidate. There is no implicit fallback beyond the list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from provision_engine.errors import (
    CandidateFailure,
    CascadeExhaustedError,
    ErrorClass,
)
from provision_engine.models import ResourceReservation
from provision_engine.observability.logging import get_logger
from provision_engine.observability.metrics import ProvisionerMetrics
from provision_engine.providers.registry import ProviderRegistry

from .ledger import ResourceLedger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CascadeCandidate:
    provider: str
    country: str
    explicit: bool = False


class ProviderCascade:
    def __init__(
        self,
        registry: ProviderRegistry,
        ledger: ResourceLedger,
        *,
        default_countries: Sequence[str],
        probe_availability: bool = True,
        metrics: ProvisionerMetrics | None = None,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._default_countries = tuple(default_countries)
        self._probe = probe_availability
        self._metrics = metrics

    def build_candidates(
        self,
        country_preference: str | None = None,
        *,
        provider: str | None = None,
    ) -> list[CascadeCandidate]:
        """The caller's country on every provider, or the built-in priority list."""
        providers = (provider,) if provider else self._registry.names()
        candidates: list[CascadeCandidate] = []
        seen: set[tuple[str, str]] = set()

        def add(country: str, explicit: bool) -> None:
            for name in providers:
                key = (name, country.strip().lower())
                if name in self._registry and key not in seen:
                    seen.add(key)
                    candidates.append(CascadeCandidate(name, country.strip(), explicit))

        if country_preference and country_preference.strip():
            add(country_preference, True)
            return candidates
        for country in self._default_countries:
            add(country, False)
        return candidates

    async def purchase(
        self,
        candidates: Sequence[CascadeCandidate],
        *,
        service: str,
    ) -> ResourceReservation:
        failures: list[CandidateFailure] = []
        rate_limited: set[str] = set()

        for candidate in candidates:
            log = logger.bind(provider=candidate.provider, country=candidate.country)
            if candidate.provider in rate_limited:
                failures.append(
                    CandidateFailure(
                        candidate.provider,
                        candidate.country,
                        ErrorClass.RATE_LIMITED,
                        'skipped: provider rate-limited earlier in this run',
                    )
                )
                continue

            client = self._registry.get(candidate.provider)

            if self._probe:
                try:
                    available = await client.check_availability(candidate.country, service)
                except Exception as exc:
                    log.warning('cascade_probe_failed', error=str(exc))
                    failures.append(
                        CandidateFailure(
                            candidate.provider,
                            candidate.country,
                            ErrorClass.TRANSIENT,
                            f'availability probe failed: {exc}',
                        )
                    )
                    continue
                if not available:
                    log.info('cascade_no_stock')
                    failures.append(
                        CandidateFailure(
                            candidate.provider,
                            candidate.country,
                            ErrorClass.TRANSIENT,
                            'no stock reported',
                        )
                    )
                    continue

            try:
                purchase = await client.buy(candidate.country, service)
            except Exception as exc:
                error_class = client.classify(exc)
                self._count(candidate.provider, error_class.value)
                log.warning(
                    'cascade_purchase_failed',
                    error_class=error_class.value,
                    explicit=candidate.explicit,
                    error=str(exc),
                )
                if error_class is ErrorClass.RATE_LIMITED:
                    rate_limited.add(candidate.provider)
                failures.append(
                    CandidateFailure(candidate.provider, candidate.country, error_class, str(exc))
                )
                continue

            self._count(candidate.provider, 'success')
            log.info(
                'cascade_purchase_succeeded',
                external_id=purchase.external_id,
                resource_value=purchase.resource_value,
            )
            return await self._ledger.record(purchase)

        raise CascadeExhaustedError(failures)

    def _count(self, provider: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.purchase_attempts.labels(provider=provider, outcome=outcome).inc()
