"""Provider client contract and normalized result types.

Every resource provider speaks its own loosely-typed wire format. Adapters
normalize those payloads into the types below at the boundary and raise
``ProviderError`` subclasses that carry an ``ErrorClass``; nothing above
this package sees raw provider JSON.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from provision_engine.errors import ErrorClass, ProvisioningError


# ── Exception hierarchy ─────────────────────────────────────────


class ProviderError(Exception):
    """Base exception for provider API failures."""

    error_class = ErrorClass.TRANSIENT

    def __init__(
        self,
        provider: str,
        message: str = "",
        *,
        status_code: int = 0,
        code: str | None = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(f"{provider} error: {message}")


class ProviderRateLimitedError(ProviderError):
    """Provider asked us to slow down (HTTP 429 or an explicit signal)."""

    error_class = ErrorClass.RATE_LIMITED


class ProviderFatalError(ProviderError):
    """Non-recoverable for this request: bad selector, no balance, bad auth."""

    error_class = ErrorClass.FATAL


class ProviderResourceInvalidError(ProviderFatalError):
    """The external id is expired, cancelled or unknown to the provider."""


def classify_error(error: BaseException) -> ErrorClass:
    """Shared classification used by every adapter's ``classify()``."""
    if isinstance(error, ProviderError):
        return error.error_class
    if isinstance(error, ProvisioningError):
        if error.code == "RATE_LIMITED":
            return ErrorClass.RATE_LIMITED
        return ErrorClass.TRANSIENT if error.retryable else ErrorClass.FATAL
    if isinstance(error, (httpx.TransportError, TimeoutError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorClass.RATE_LIMITED
        if status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


# ── Normalized results ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Purchase:
    """A successfully bought resource."""

    provider: str
    external_id: str
    resource_value: str
    country: str | None = None
    service: str | None = None


@dataclass(frozen=True, slots=True)
class PollResult:
    """One poll outcome. ``delivered`` is None while still waiting."""

    delivered: str | None = None

    @property
    def is_waiting(self) -> bool:
        return self.delivered is None


WAITING = PollResult()


def normalize_phone(value: str) -> str:
    """Return the number in E.164-ish form with a leading ``+``."""
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if not digits:
        raise ValueError(f"not a phone number: {value!r}")
    return f"+{digits}"


# ── Contract ─────────────────────────────────────────────────────


@runtime_checkable
class ProviderClient(Protocol):
    """Uniform operations over one external resource provider.

    Instances are stateless with respect to provisions and safe to share
    across concurrent pipelines.
    """

    name: str

    async def get_balance(self) -> float:
        """Return the account balance in the provider's currency."""
        ...

    async def check_availability(self, country: str, service: str) -> bool:
        """Return True if the provider reports stock for country/service."""
        ...

    async def buy(self, country: str, service: str) -> Purchase:
        """Purchase exactly one resource. Never retried internally."""
        ...

    async def mark_ready(self, external_id: str) -> None:
        """Tell the provider the resource is in use and codes should flow."""
        ...

    async def poll_once(self, external_id: str) -> PollResult:
        """Check once for a delivered message."""
        ...

    def classify(self, error: BaseException) -> ErrorClass:
        """Map an error raised by this client to an ErrorClass."""
        ...
