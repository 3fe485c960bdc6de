"""Windowed polling for a delivered verification message.

Polls a provider's ``poll_once`` inside up to ``max_windows`` windows of
``window_seconds`` each, waiting ``interval_seconds`` (optionally growing by
``backoff_factor``) between polls. Transient and rate-limited poll errors
are logged and polling continues. A permanently invalid resource ends the
wait at once with ResourceInvalidatedError; any other fatal error (bad
credentials, a blocked account) ends it with OtpPollFailedError. Exhausting every window raises CodeTimeoutError.

Code extraction tries, in order:
  a) two digit triplets joined by a hyphen or space ("123-456")
  b) a bare digit run of the expected length ("123456")
  c) the raw text, unchanged
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from provision_engine.errors import (
    CodeTimeoutError,
    ErrorClass,
    OtpPollFailedError,
    ResourceInvalidatedError,
)
from provision_engine.models import utc_now
from provision_engine.observability.logging import get_logger
from provision_engine.observability.metrics import ProvisionerMetrics
from provision_engine.providers.base import ProviderClient, ProviderResourceInvalidError

logger = get_logger(__name__)

_DELIMITED_TRIPLETS = re.compile(r'(?<!\d)(\d{3})[-\s](\d{3})(?!\d)')


def extract_code(text: str, *, code_length: int = 6) -> str:
    """Pull the verification code out of a delivered message."""
    match = _DELIMITED_TRIPLETS.search(text)
    if match:
        return match.group(1) + match.group(2)
    bare = re.search(rf'(?<!\d)(\d{{{code_length}}})(?!\d)', text)
    if bare:
        return bare.group(1)
    return text


@dataclass(frozen=True, slots=True)
class PollPolicy:
    interval_seconds: float = 10.0
    window_seconds: float = 60.0
    max_windows: int = 3
    backoff_factor: float = 1.0
    max_interval_seconds: float = 30.0
    code_length: int = 6


@dataclass(frozen=True, slots=True)
class DeliveredCode:
    raw_text: str
    code: str
    window: int
    polls: int
    received_at: datetime


class OtpPoller:
    def __init__(
        self,
        policy: PollPolicy | None = None,
        *,
        metrics: ProvisionerMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._policy = policy or PollPolicy()
        self._metrics = metrics
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    async def wait_for_code(self, client: ProviderClient, external_id: str) -> DeliveredCode:
        policy = self._policy
        started = self._monotonic()
        polls = 0
        log = logger.bind(provider=client.name, external_id=external_id)

        for window in range(1, policy.max_windows + 1):
            window_ends = self._monotonic() + policy.window_seconds
            interval = policy.interval_seconds
            log.info('otp_window_started', window=window, max_windows=policy.max_windows)

            while True:
                polls += 1
                delivered = await self._poll(client, external_id, log)
                if delivered is not None:
                    if self._metrics is not None:
                        self._metrics.otp_wait_seconds.observe(self._monotonic() - started)
                    code = extract_code(delivered, code_length=policy.code_length)
                    log.info('otp_received', window=window, polls=polls)
                    return DeliveredCode(
                        raw_text=delivered,
                        code=code,
                        window=window,
                        polls=polls,
                        received_at=self._clock(),
                    )

                remaining = window_ends - self._monotonic()
                if remaining <= 0:
                    break
                await self._sleep(min(interval, remaining))
                interval = min(interval * policy.backoff_factor, policy.max_interval_seconds)

            log.info('otp_window_expired', window=window)

        raise CodeTimeoutError(
            f'no verification code after {policy.max_windows} windows of '
            f'{policy.window_seconds:g}s ({polls} polls)'
        )

    async def _poll(self, client: ProviderClient, external_id: str, log) -> str | None:
        try:
            result = await client.poll_once(external_id)
        except Exception as exc:
            error_class = client.classify(exc)
            if isinstance(exc, ProviderResourceInvalidError):
                log.warning('otp_resource_invalidated', error=str(exc))
                raise ResourceInvalidatedError(
                    f'{client.name} resource {external_id} is no longer valid: {exc}'
                ) from exc
            if error_class is ErrorClass.FATAL:
                log.error('otp_poll_fatal', error=str(exc))
                raise OtpPollFailedError(
                    f'{client.name} poll for {external_id} failed: {exc}'
                ) from exc
            log.warning('otp_poll_failed', error_class=error_class.value, error=str(exc))
            return None
        return result.delivered
