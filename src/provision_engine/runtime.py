"""Runtime factory for the provisioning engine.

build_runtime() is the single place where the engine's long-lived objects
are constructed: one provider registry, one port allocator, one scheduler,
one metrics registry. Everything else receives them by reference; nothing
is held in module-level state.

Usage:
    # Local development (in-memory stores)
    runtime = build_runtime(ProvisionerSettings(), acquirer=..., driver=...)

    # Non-local (PostgREST stores, HTTP broadcast)
    settings = ProvisionerSettings.from_env()
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    runtime = build_runtime(settings, acquirer=..., driver=...)

    # Testing (full DI control)
    runtime = build_runtime(settings, acquirer=..., driver=..., registry=..., stores=...)

    await runtime.start()
    provision = await runtime.service.create(country_preference="Canada")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

import httpx

from .db.postgrest import PostgrestClient
from .db.stores import (
    PostgrestOtpAttemptStore,
    PostgrestProvisionStore,
    PostgrestReservationStore,
    PostgrestSessionStore,
)
from .inmemory import (
    InMemoryOtpAttemptStore,
    InMemoryProvisionStore,
    InMemoryReservationStore,
    InMemorySessionStore,
)
from .jobs.payloads import CODE_INJECTION_QUEUE, PROVISION_QUEUE
from .jobs.scheduler import JobScheduler
from .notifications import HttpBroadcastSink, Notifier
from .observability.metrics import ProvisionerMetrics
from .operations import OrphanReservationSweeper, StaleProvisionDetector
from .protocols import (
    AutomationDriver,
    NotificationSink,
    OtpAttemptStore,
    ProvisionStore,
    ReservationStore,
    SessionAcquirer,
    SessionStore,
)
from .providers.registry import ProviderRegistry
from .provisioning.cascade import ProviderCascade
from .provisioning.duplicate_guard import DuplicateGuard
from .provisioning.ledger import ResourceLedger
from .provisioning.otp_poller import OtpPoller, PollPolicy
from .provisioning.pipeline import CodeInjectionHandler, PipelineConfig, ProvisionPipeline
from .provisioning.state_machine import ProvisionStateMachine
from .resources.ports import PortAllocator
from .service import ProvisionService
from .settings import ProvisionerSettings

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when settings fail validation."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("invalid provisioner settings: " + "; ".join(problems))


@dataclass(frozen=True)
class Stores:
    """The four persisted record stores."""

    provisions: ProvisionStore
    reservations: ReservationStore
    sessions: SessionStore
    otp_attempts: OtpAttemptStore


def build_inmemory_stores() -> Stores:
    return Stores(
        provisions=InMemoryProvisionStore(),
        reservations=InMemoryReservationStore(),
        sessions=InMemorySessionStore(),
        otp_attempts=InMemoryOtpAttemptStore(),
    )


def build_postgrest_stores(settings: ProvisionerSettings, http_client: httpx.AsyncClient) -> Stores:
    client = PostgrestClient(
        base_url=settings.postgrest_url,
        service_key=settings.postgrest_service_key,
        http_client=http_client,
    )
    return Stores(
        provisions=PostgrestProvisionStore(client),
        reservations=PostgrestReservationStore(client),
        sessions=PostgrestSessionStore(client),
        otp_attempts=PostgrestOtpAttemptStore(client),
    )


@dataclass(frozen=True)
class Runtime:
    """Every long-lived engine object, wired together."""

    settings: ProvisionerSettings
    stores: Stores
    registry: ProviderRegistry
    ports: PortAllocator
    metrics: ProvisionerMetrics
    notifier: Notifier
    ledger: ResourceLedger
    cascade: ProviderCascade
    poller: OtpPoller
    state_machine: ProvisionStateMachine
    guard: DuplicateGuard
    scheduler: JobScheduler
    pipeline: ProvisionPipeline
    injector: CodeInjectionHandler
    service: ProvisionService
    stale_detector: StaleProvisionDetector
    orphan_sweeper: OrphanReservationSweeper
    http_client: httpx.AsyncClient | None = None
    owns_http_client: bool = False

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop workers, flush background work, close owned HTTP resources."""
        await self.scheduler.stop()
        await self.pipeline.drain()
        await self.notifier.drain()
        if self.owns_http_client and self.http_client is not None:
            await self.http_client.aclose()


def build_runtime(
    settings: ProvisionerSettings,
    *,
    acquirer: SessionAcquirer,
    driver: AutomationDriver,
    stores: Stores | None = None,
    registry: ProviderRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
    sink: NotificationSink | None = None,
    metrics: ProvisionerMetrics | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> Runtime:
    """Validate settings and wire the engine.

    ``http_client`` is shared by provider adapters, PostgREST stores and the
    broadcast sink. When omitted one is created and closed by ``stop()``.
    """
    problems = settings.validate()
    if problems:
        raise ConfigurationError(problems)

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    if stores is None:
        if settings.uses_postgrest:
            stores = build_postgrest_stores(settings, http_client)
        else:
            stores = build_inmemory_stores()
    if registry is None:
        registry = ProviderRegistry.from_settings(settings, http_client)
    if sink is None and settings.broadcast_url:
        sink = HttpBroadcastSink(url=settings.broadcast_url, http_client=http_client)

    metrics = metrics or ProvisionerMetrics()
    notifier = Notifier(sink)
    ports = PortAllocator(
        base_vnc_port=settings.base_vnc_port,
        base_automation_port=settings.base_automation_port,
        base_adb_port=settings.base_adb_port,
        range_size=settings.port_range_size,
    )
    ledger = ResourceLedger(
        stores.reservations,
        orphan_ttl=timedelta(seconds=settings.reservation_orphan_ttl_seconds),
    )
    cascade = ProviderCascade(
        registry,
        ledger,
        default_countries=settings.cascade_countries,
        probe_availability=settings.probe_availability,
        metrics=metrics,
    )
    poller_kwargs: dict[str, Any] = {"metrics": metrics}
    scheduler_kwargs: dict[str, Any] = {"metrics": metrics}
    if sleep is not None:
        poller_kwargs["sleep"] = sleep
        scheduler_kwargs["sleep"] = sleep
    poller = OtpPoller(
        PollPolicy(
            interval_seconds=settings.otp_poll_interval_seconds,
            window_seconds=settings.otp_window_seconds,
            max_windows=settings.otp_max_windows,
            code_length=settings.otp_code_length,
        ),
        **poller_kwargs,
    )
    state_machine = ProvisionStateMachine(
        stores.provisions,
        notifier=notifier,
        metrics=metrics,
        max_compensations=settings.max_compensations,
    )
    guard = DuplicateGuard(stores.sessions, metrics=metrics)
    scheduler = JobScheduler(**scheduler_kwargs)

    pipeline = ProvisionPipeline(
        state_machine=state_machine,
        guard=guard,
        cascade=cascade,
        ledger=ledger,
        poller=poller,
        registry=registry,
        sessions=stores.sessions,
        otp_attempts=stores.otp_attempts,
        acquirer=acquirer,
        driver=driver,
        ports=ports,
        scheduler=scheduler,
        notifier=notifier,
        config=PipelineConfig(
            deadline_seconds=settings.pipeline_deadline_seconds,
            injection_wait_seconds=settings.injection_wait_seconds,
            default_service=settings.default_service,
        ),
    )
    injector = CodeInjectionHandler(sessions=stores.sessions, driver=driver)

    scheduler.register_queue(
        PROVISION_QUEUE,
        pipeline.handle,
        concurrency=settings.pipeline_concurrency,
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_retry_backoff_seconds,
    )
    scheduler.register_queue(
        CODE_INJECTION_QUEUE,
        injector.handle,
        concurrency=settings.injection_concurrency,
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_retry_backoff_seconds,
    )

    logger.info(
        "Provisioner runtime built (environment=%s, providers=%s, persistence=%s)",
        settings.environment,
        ",".join(registry.names()) or "none",
        "postgrest" if settings.uses_postgrest else "memory",
    )

    return Runtime(
        settings=settings,
        stores=stores,
        registry=registry,
        ports=ports,
        metrics=metrics,
        notifier=notifier,
        ledger=ledger,
        cascade=cascade,
        poller=poller,
        state_machine=state_machine,
        guard=guard,
        scheduler=scheduler,
        pipeline=pipeline,
        injector=injector,
        service=ProvisionService(stores.provisions, scheduler),
        stale_detector=StaleProvisionDetector(settings.state_timeout_seconds),
        orphan_sweeper=OrphanReservationSweeper(ledger, registry),
        http_client=http_client,
        owns_http_client=owns_http_client,
    )
