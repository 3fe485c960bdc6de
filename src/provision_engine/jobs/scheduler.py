"""In-process job queues with bounded concurrency and at-least-once delivery.

Each registered queue gets ``concurrency`` worker tasks pulling from an
``asyncio.Queue``. A failed attempt is redelivered after exponential
backoff until ``max_attempts`` is spent, unless the error says retrying
cannot help (``ProvisioningError.retryable`` is False). A job interrupted by
``stop()`` goes back on its queue, so a restarted scheduler redelivers it.

``enqueue_and_wait`` lets one job block on another with a timeout; expiry
raises DeadlineExceededError while the awaited job keeps running.

Finished jobs stay visible to ``get`` and ``wait`` until more than
``retain_finished`` later jobs have finished; the oldest are then dropped.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from provision_engine.errors import (
    DeadlineExceededError,
    FatalError,
    ProvisioningError,
    describe_error,
)
from provision_engine.models import new_id, utc_now
from provision_engine.observability.logging import bound_context, get_logger
from provision_engine.observability.metrics import ProvisionerMetrics

logger = get_logger(__name__)

JobHandler = Callable[[Any, 'JobContext'], Awaitable[Any]]


class JobStatus(str, Enum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'


class JobFailedError(FatalError):
    code = 'JOB_FAILED'

    def __init__(self, job: Job) -> None:
        self.job = job
        super().__init__(
            f'job {job.id} on {job.queue} failed after {job.attempts} attempt(s): {job.error}'
        )


class UnknownQueueError(KeyError):
    pass


@dataclass(eq=False)
class Job:
    """Scheduler bookkeeping for one enqueued payload."""

    id: str
    queue: str
    payload: Any
    max_attempts: int
    attempts: int = 0
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    result: Any = None
    error: str | None = None
    exception: BaseException | None = None
    created_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True, slots=True)
class QueueConfig:
    name: str
    handler: JobHandler
    concurrency: int = 1
    max_attempts: int = 3
    backoff_seconds: float = 2.0


class JobContext:
    """Handed to every handler invocation."""

    def __init__(self, job: Job, scheduler: JobScheduler) -> None:
        self.job = job
        self.scheduler = scheduler

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def attempt(self) -> int:
        return self.job.attempts

    def report_progress(self, percent: int) -> None:
        self.job.progress = max(0, min(100, int(percent)))


class JobScheduler:
    def __init__(
        self,
        *,
        metrics: ProvisionerMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retain_finished: int = 1000,
    ) -> None:
        if retain_finished < 0:
            raise ValueError('retain_finished must be >= 0')
        self._metrics = metrics
        self._sleep = sleep
        self._retain_finished = retain_finished
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._configs: dict[str, QueueConfig] = {}
        self._queues: dict[str, asyncio.Queue[Job]] = {}
        self._jobs: dict[str, Job] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._retries: set[asyncio.Task[None]] = set()
        self._running = False

    # ── Configuration ────────────────────────────────────────────

    def register_queue(
        self,
        name: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
    ) -> None:
        if name in self._configs:
            raise ValueError(f'queue {name!r} is already registered')
        if concurrency < 1:
            raise ValueError('concurrency must be >= 1')
        if max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        self._configs[name] = QueueConfig(
            name=name,
            handler=handler,
            concurrency=concurrency,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
        )
        self._queues[name] = asyncio.Queue()
        if self._running:
            self._spawn_workers(self._configs[name])

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for config in self._configs.values():
            self._spawn_workers(config)
        logger.info('scheduler_started', queues=sorted(self._configs))

    async def stop(self) -> None:
        """Cancel workers; interrupted and delayed jobs are put back on their queues."""
        if not self._running:
            return
        self._running = False
        tasks = [*self._workers, *self._retries]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._retries.clear()
        logger.info('scheduler_stopped')

    def _spawn_workers(self, config: QueueConfig) -> None:
        for index in range(config.concurrency):
            task = asyncio.get_running_loop().create_task(
                self._worker(config, index),
                name=f'{config.name}-worker-{index}',
            )
            self._workers.append(task)

    # ── Producer API ─────────────────────────────────────────────

    async def enqueue(self, queue: str, payload: Any, *, job_id: str | None = None) -> Job:
        """Add a job. Re-enqueueing a live ``job_id`` returns the existing job."""
        config = self._config(queue)
        if job_id is not None:
            existing = self._jobs.get(job_id)
            if existing is not None and existing.status is not JobStatus.FAILED:
                return existing

        job = Job(
            id=job_id or new_id(),
            queue=queue,
            payload=payload,
            max_attempts=config.max_attempts,
        )
        self._jobs[job.id] = job
        self._queues[queue].put_nowait(job)
        logger.debug('job_enqueued', job_id=job.id, queue=queue)
        return job

    async def wait(self, job_id: str, *, timeout: float | None = None) -> Any:
        """Wait for a job's final outcome; raise JobFailedError if it failed."""
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return await self._wait_job(job, timeout)

    async def _wait_job(self, job: Job, timeout: float | None) -> Any:
        try:
            await asyncio.wait_for(job.done.wait(), timeout)
        except TimeoutError:
            raise DeadlineExceededError(
                f'job {job.id} on {job.queue} did not finish within {timeout:g}s'
            ) from None
        if job.status is JobStatus.FAILED:
            raise JobFailedError(job) from job.exception
        return job.result

    async def enqueue_and_wait(
        self,
        queue: str,
        payload: Any,
        *,
        timeout: float,
        job_id: str | None = None,
    ) -> Any:
        job = await self.enqueue(queue, payload, job_id=job_id)
        return await self._wait_job(job, timeout)

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def pending(self, queue: str) -> int:
        return self._queues[queue].qsize() if queue in self._queues else 0

    def _config(self, queue: str) -> QueueConfig:
        try:
            return self._configs[queue]
        except KeyError:
            raise UnknownQueueError(queue) from None

    # ── Workers ──────────────────────────────────────────────────

    async def _worker(self, config: QueueConfig, index: int) -> None:
        queue = self._queues[config.name]
        while True:
            job = await queue.get()
            try:
                await self._execute(config, job)
            finally:
                queue.task_done()

    async def _execute(self, config: QueueConfig, job: Job) -> None:
        job.attempts += 1
        job.status = JobStatus.ACTIVE
        gauge = self._metrics.jobs_in_flight.labels(queue=config.name) if self._metrics else None
        if gauge is not None:
            gauge.inc()
        try:
            with bound_context(job_id=job.id, queue=config.name, attempt=job.attempts):
                try:
                    result = await config.handler(job.payload, JobContext(job, self))
                except asyncio.CancelledError:
                    job.status = JobStatus.WAITING
                    self._queues[config.name].put_nowait(job)
                    logger.warning('job_interrupted_requeued')
                    raise
                except Exception as exc:
                    self._handle_failure(config, job, exc)
                else:
                    job.status = JobStatus.COMPLETED
                    job.result = result
                    job.progress = 100
                    self._finish(job, 'completed')
        finally:
            if gauge is not None:
                gauge.dec()

    def _handle_failure(self, config: QueueConfig, job: Job, exc: Exception) -> None:
        job.error = describe_error(exc)
        job.exception = exc
        retryable = exc.retryable if isinstance(exc, ProvisioningError) else True
        if retryable and job.attempts < job.max_attempts:
            delay = config.backoff_seconds * (2 ** (job.attempts - 1))
            job.status = JobStatus.WAITING
            logger.warning(
                'job_attempt_failed',
                error=job.error,
                retry_in=delay,
                max_attempts=job.max_attempts,
            )
            task = asyncio.get_running_loop().create_task(self._requeue_later(job, delay))
            self._retries.add(task)
            task.add_done_callback(self._retries.discard)
            return

        job.status = JobStatus.FAILED
        logger.error('job_failed', error=job.error, retryable=retryable)
        self._finish(job, 'failed')

    async def _requeue_later(self, job: Job, delay: float) -> None:
        try:
            await self._sleep(delay)
        finally:
            self._queues[job.queue].put_nowait(job)

    def _finish(self, job: Job, outcome: str) -> None:
        job.finished_at = utc_now()
        job.done.set()
        if self._metrics is not None:
            self._metrics.jobs_total.labels(queue=job.queue, outcome=outcome).inc()
        logger.info('job_finished', outcome=outcome, attempts=job.attempts)
        self._retain(job)

    def _retain(self, job: Job) -> None:
        self._finished[job.id] = None
        self._finished.move_to_end(job.id)
        while len(self._finished) > self._retain_finished:
            job_id, _ = self._finished.popitem(last=False)
            current = self._jobs.get(job_id)
            if current is not None and current.is_finished:
                del self._jobs[job_id]
