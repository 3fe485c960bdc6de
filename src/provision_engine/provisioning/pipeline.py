"""Provision pipeline: drives one provision from PENDING to ACTIVE or FAILED.

Orchestrates the full flow for a pipeline job:
  PENDING -> ACQUIRING_RESOURCE -> PURCHASING -> AUTOMATING
  -> AWAITING_CODE -> INJECTING_CODE -> FINALIZING -> ACTIVE

At each step the pipeline:
  1. Advances the state machine.
  2. Performs the step through an injected collaborator.
  3. On any failure moves the provision to FAILED with a single
     human-readable error and releases its session in the background.

The purchase is just-in-time: the automation driver receives a resource
provider and calls it once the target application is ready for a number.
Purchase state lives on ``PipelineContext`` so a second call returns the
number already bought instead of buying again.

The whole run sits under one deadline; expiry fails the provision no matter
which step is in flight.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from provision_engine.errors import (
    DuplicateExecutionError,
    FatalError,
    InjectionFailedError,
    InvalidStateTransition,
    ResourceAlreadyBoundError,
    describe_error,
)
from provision_engine.jobs.payloads import (
    CODE_INJECTION_QUEUE,
    CodeInjectionPayload,
    ProvisionJobPayload,
)
from provision_engine.jobs.scheduler import JobContext, JobFailedError, JobScheduler
from provision_engine.models import (
    DerivedSession,
    OtpAttempt,
    ProvisionState,
    ResourceReservation,
    SessionSpec,
    SessionStatus,
    new_id,
    utc_now,
)
from provision_engine.notifications import CODE_RECEIVED, SESSION_READY, Notifier
from provision_engine.observability.logging import bound_context, get_logger
from provision_engine.protocols import (
    AutomationDriver,
    OtpAttemptStore,
    SessionAcquirer,
    SessionStore,
)
from provision_engine.providers.registry import ProviderRegistry
from provision_engine.resources.ports import PortAllocator

from .cascade import CascadeCandidate, ProviderCascade
from .duplicate_guard import DuplicateGuard
from .ledger import ResourceLedger
from .otp_poller import OtpPoller
from .state_machine import ProvisionStateMachine

S = ProvisionState

logger = get_logger(__name__)

ProgressReporter = Callable[[int], None]


class ProvisionFailedError(FatalError):
    """The pipeline run ended with the provision in FAILED."""

    code = 'PROVISION_FAILED'

    def __init__(self, provision_id: str, last_error: str) -> None:
        self.provision_id = provision_id
        self.last_error = last_error
        super().__init__(f'provision {provision_id} failed: {last_error}')


class PipelineStatus(str, Enum):
    ACTIVE = 'active'
    DUPLICATE = 'duplicate'


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    provision_id: str
    status: PipelineStatus
    resolved_phone: str | None = None
    session_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    deadline_seconds: float = 900.0
    injection_wait_seconds: float = 600.0
    default_service: str = 'whatsapp'


# ── Per-run context ──────────────────────────────────────────────────


@dataclass(eq=False)
class PipelineContext:
    """Mutable state of one pipeline run.

    ``purchase_attempted`` and ``purchased`` make the resource provider
    single-use per attempt: the cascade runs at most once until
    ``reset_purchase()`` starts a compensating attempt. A failed purchase is
    kept in ``purchase_error`` so it survives a driver that swallows it.
    """

    provision_id: str
    service: str
    country_hint: str | None
    candidates: tuple[CascadeCandidate, ...]
    session: DerivedSession | None = None
    purchase_attempted: bool = False
    purchased: bool = False
    reservation: ResourceReservation | None = None
    purchase_error: Exception | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def reset_purchase(self) -> None:
        self.purchase_attempted = False
        self.purchased = False
        self.reservation = None
        self.purchase_error = None


# ── Pipeline ─────────────────────────────────────────────────────────


class ProvisionPipeline:
    """Job handler for the ``provision`` queue."""

    def __init__(
        self,
        *,
        state_machine: ProvisionStateMachine,
        guard: DuplicateGuard,
        cascade: ProviderCascade,
        ledger: ResourceLedger,
        poller: OtpPoller,
        registry: ProviderRegistry,
        sessions: SessionStore,
        otp_attempts: OtpAttemptStore,
        acquirer: SessionAcquirer,
        driver: AutomationDriver,
        ports: PortAllocator,
        scheduler: JobScheduler,
        notifier: Notifier | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self._sm = state_machine
        self._guard = guard
        self._cascade = cascade
        self._ledger = ledger
        self._poller = poller
        self._registry = registry
        self._sessions = sessions
        self._otp_attempts = otp_attempts
        self._acquirer = acquirer
        self._driver = driver
        self._ports = ports
        self._scheduler = scheduler
        self._notifier = notifier or Notifier()
        self._config = config or PipelineConfig()
        self._cleanups: set[asyncio.Task[None]] = set()

    async def handle(self, payload: Any, ctx: JobContext) -> PipelineOutcome:
        """Scheduler entry point."""
        job = ProvisionJobPayload.model_validate(payload)
        return await self.run(job, report=ctx.report_progress)

    async def run(
        self,
        job: ProvisionJobPayload,
        *,
        report: ProgressReporter | None = None,
    ) -> PipelineOutcome:
        report = report or (lambda percent: None)
        with bound_context(provision_id=job.provision_id):
            provision = await self._sm.load(job.provision_id)
            try:
                await self._guard.check(provision)
            except DuplicateExecutionError as exc:
                return self._duplicate(exc)

            context = PipelineContext(
                provision_id=provision.id,
                service=(
                    job.service_selector
                    or provision.service_selector
                    or self._config.default_service
                ),
                country_hint=job.country_preference or provision.country_preference,
                candidates=tuple(
                    self._cascade.build_candidates(
                        job.country_preference or provision.country_preference
                    )
                ),
            )
            link_to_web = job.link_to_web or provision.link_to_web

            deadline = asyncio.timeout(self._config.deadline_seconds)
            try:
                async with deadline:
                    return await self._execute(context, link_to_web, report)
            except DuplicateExecutionError as exc:
                return self._duplicate(exc)
            except Exception as exc:
                if isinstance(exc, TimeoutError) and deadline.expired():
                    message = (
                        f'pipeline deadline of {self._config.deadline_seconds:g}s exceeded'
                    )
                else:
                    message = describe_error(exc)
                await self._fail(context, message)
                raise ProvisionFailedError(context.provision_id, message) from exc

    async def drain(self) -> None:
        """Wait for background session releases (shutdown and tests)."""
        while self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    # ── Steps ────────────────────────────────────────────────────────

    async def _execute(
        self,
        context: PipelineContext,
        link_to_web: bool,
        report: ProgressReporter,
    ) -> PipelineOutcome:
        pid = context.provision_id
        try:
            await self._sm.advance(pid, S.ACQUIRING_RESOURCE)
        except InvalidStateTransition as exc:
            # Lost the claim to a concurrent delivery of the same job.
            raise DuplicateExecutionError(pid, str(exc)) from exc

        session = await self._acquire_session(context, link_to_web)
        report(20)

        await self._sm.advance(pid, S.PURCHASING)
        report(30)

        await self._automate(context, session)
        reservation = context.reservation
        await self._sm.advance(pid, S.AWAITING_CODE)
        report(60)

        client = self._registry.get(reservation.provider)
        delivered = await self._poller.wait_for_code(client, reservation.external_id)
        await self._otp_attempts.append(
            OtpAttempt(
                id=new_id(),
                provision_id=pid,
                raw_text=delivered.raw_text,
                code=delivered.code,
                provider=reservation.provider,
                external_id=reservation.external_id,
                received_at=delivered.received_at,
            )
        )
        self._notifier.publish(
            CODE_RECEIVED,
            {
                'provision_id': pid,
                'provider': reservation.provider,
                'window': delivered.window,
            },
        )

        await self._sm.advance(pid, S.INJECTING_CODE)
        await self._inject(context, reservation, delivered.code)
        report(80)

        await self._sm.advance(pid, S.FINALIZING)
        session = await self._sessions.save(
            replace(
                session,
                status=SessionStatus.ACTIVE,
                is_active=True,
                updated_at=utc_now(),
            )
        )
        context.session = session
        provision = await self._sm.advance(pid, S.ACTIVE)
        self._notifier.publish(
            SESSION_READY,
            {
                'provision_id': pid,
                'session_id': session.id,
                'automation_endpoint': session.automation_endpoint,
                'resolved_phone': provision.resolved_phone,
            },
        )
        report(100)
        logger.info('provision_active', resolved_phone=provision.resolved_phone)
        return PipelineOutcome(
            provision_id=pid,
            status=PipelineStatus.ACTIVE,
            resolved_phone=provision.resolved_phone,
            session_id=session.id,
        )

    async def _acquire_session(
        self, context: PipelineContext, link_to_web: bool
    ) -> DerivedSession:
        pid = context.provision_id
        ports = self._ports.allocate(pid)
        try:
            acquired = await self._acquirer.acquire(
                SessionSpec(
                    provision_id=pid,
                    ports=ports,
                    link_to_web=link_to_web,
                    labels={'provision_id': pid},
                )
            )
        except BaseException:
            self._ports.release(pid)
            raise
        session = await self._sessions.create(
            DerivedSession(
                id=new_id(),
                provision_id=pid,
                handle=acquired.handle,
                automation_endpoint=acquired.automation_endpoint,
                ports=dict(ports),
            )
        )
        context.session = session
        logger.info('session_acquired', session_id=session.id, handle=session.handle)
        return session

    async def _automate(self, context: PipelineContext, session: DerivedSession) -> None:
        """Run registration, buying a replacement when the number is refused."""
        resource = functools.partial(self._provide_resource, context)
        while True:
            try:
                await self._driver.register(
                    session.automation_endpoint, resource, context.country_hint
                )
            except ResourceAlreadyBoundError as exc:
                await self._compensate(context, session, exc)
                continue
            break
        if not context.purchased:
            if context.purchase_attempted and context.purchase_error is not None:
                raise context.purchase_error
            raise FatalError('automation finished without requesting a resource')

    async def _provide_resource(self, context: PipelineContext) -> str:
        """Resource provider handed to the automation driver."""
        async with context.lock:
            if context.purchased:
                return context.reservation.resource_value
            if context.purchase_attempted:
                raise FatalError('resource purchase already failed for this attempt')
            context.purchase_attempted = True

            try:
                reservation = await self._cascade.purchase(
                    context.candidates, service=context.service
                )
                reservation = await self._ledger.bind(
                    reservation.resource_value, context.provision_id
                )
            except Exception as exc:
                context.purchase_error = exc
                raise
            context.reservation = reservation
            context.purchased = True

            client = self._registry.get(reservation.provider)
            try:
                await client.mark_ready(reservation.external_id)
            except Exception as exc:
                logger.warning(
                    'mark_ready_failed',
                    provider=reservation.provider,
                    external_id=reservation.external_id,
                    error=str(exc),
                )

            await self._sm.record_purchase(
                context.provision_id,
                resource_value=reservation.resource_value,
                external_id=reservation.external_id,
                provider=reservation.provider,
            )
            return reservation.resource_value

    async def _compensate(
        self,
        context: PipelineContext,
        session: DerivedSession,
        signal: ResourceAlreadyBoundError,
    ) -> None:
        refused = context.reservation
        logger.warning(
            'resource_refused_by_target',
            resource_value=refused.resource_value if refused else None,
            reason=str(signal),
        )
        if refused is not None:
            await self._ledger.discard(refused.resource_value, context.provision_id)
        await self._sm.compensate(context.provision_id)
        context.reset_purchase()
        await self._driver.reset(session.automation_endpoint)

    async def _inject(
        self,
        context: PipelineContext,
        reservation: ResourceReservation,
        code: str,
    ) -> None:
        payload = CodeInjectionPayload(
            provision_id=context.provision_id,
            external_id=reservation.external_id,
            code=code,
        )
        try:
            await self._scheduler.enqueue_and_wait(
                CODE_INJECTION_QUEUE,
                payload,
                timeout=self._config.injection_wait_seconds,
                job_id=f'inject:{context.provision_id}:{reservation.external_id}',
            )
        except JobFailedError as exc:
            raise InjectionFailedError(f'code injection failed: {exc.job.error}') from exc

    # ── Outcomes ─────────────────────────────────────────────────────

    def _duplicate(self, exc: DuplicateExecutionError) -> PipelineOutcome:
        logger.warning('pipeline_duplicate_skipped', reason=exc.reason)
        return PipelineOutcome(
            provision_id=exc.provision_id,
            status=PipelineStatus.DUPLICATE,
            reason=exc.reason,
        )

    async def _fail(self, context: PipelineContext, message: str) -> None:
        logger.error('pipeline_failed', error=message)
        try:
            await self._sm.fail_if_active(context.provision_id, message)
        except Exception:
            logger.exception('pipeline_fail_transition_failed')
        if context.session is not None:
            await self._release_session(context.session)

    async def _release_session(self, session: DerivedSession) -> None:
        try:
            await self._sessions.save(
                replace(
                    session,
                    status=SessionStatus.RELEASED,
                    is_active=False,
                    updated_at=utc_now(),
                )
            )
        except Exception:
            logger.exception('session_release_record_failed', session_id=session.id)
        task = asyncio.get_running_loop().create_task(self._release_container(session))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)

    async def _release_container(self, session: DerivedSession) -> None:
        try:
            await self._acquirer.release(session.handle)
        except Exception:
            logger.exception('session_release_failed', handle=session.handle)
        finally:
            self._ports.release(session.provision_id)


# ── Code injection ───────────────────────────────────────────────────


class CodeInjectionHandler:
    """Job handler for the ``code_injection`` queue.

    Failures propagate so the scheduler redelivers the job; the parent
    pipeline is blocked on the outcome.
    """

    def __init__(self, *, sessions: SessionStore, driver: AutomationDriver) -> None:
        self._sessions = sessions
        self._driver = driver

    async def handle(self, payload: Any, ctx: JobContext) -> str:
        job = CodeInjectionPayload.model_validate(payload)
        with bound_context(provision_id=job.provision_id):
            session = await self._sessions.find_open(job.provision_id)
            if session is None:
                raise InjectionFailedError(
                    f'provision {job.provision_id} has no open session to inject into'
                )
            await self._driver.inject_code(session.automation_endpoint, job.code)
            logger.info('code_injected', external_id=job.external_id, attempt=ctx.attempt)
            return session.id
