"""Error taxonomy for the provisioning engine.

Every failure that crosses a module boundary is one of the classes below.
Provider adapters raise ``providers.base.ProviderError`` internally; the
cascade and poller translate those into this taxonomy using the adapter's
``classify()``.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

_MAX_ERROR_LENGTH = 500


class ErrorClass(str, Enum):
    TRANSIENT = 'transient'
    RATE_LIMITED = 'rate_limited'
    FATAL = 'fatal'


class ProvisioningError(Exception):
    """Base class for engine errors.

    ``code`` is a stable machine-readable identifier; ``retryable`` tells the
    job scheduler whether redelivering the job can help.
    """

    code = 'PROVISIONING_ERROR'
    retryable = False

    def __init__(self, message: str = '', *, code: str | None = None) -> None:
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code
        super().__init__(self.message)


class TransientError(ProvisioningError):
    code = 'TRANSIENT'
    retryable = True


class RateLimitedError(ProvisioningError):
    code = 'RATE_LIMITED'
    retryable = True


class FatalError(ProvisioningError):
    code = 'FATAL'


class DeadlineExceededError(FatalError):
    code = 'DEADLINE_EXCEEDED'


class ResourceInvalidatedError(FatalError):
    """The purchased resource is permanently invalid at the provider."""

    code = 'RESOURCE_INVALIDATED'


class OtpPollFailedError(FatalError):
    """Polling cannot continue for a reason other than the resource itself."""

    code = 'OTP_POLL_FAILED'


class CodeTimeoutError(FatalError):
    code = 'CODE_TIMEOUT'


class ResourceConflictError(FatalError):
    """The resource value is already bound to another provision."""

    code = 'RESOURCE_CONFLICT'

    def __init__(self, resource_value: str, bound_to: str | None) -> None:
        self.resource_value = resource_value
        self.bound_to = bound_to
        super().__init__(
            f'resource {resource_value} is already bound to provision {bound_to}'
        )


class InjectionFailedError(FatalError):
    code = 'INJECTION_FAILED'


class ProvisionNotFoundError(FatalError):
    code = 'PROVISION_NOT_FOUND'

    def __init__(self, provision_id: str) -> None:
        self.provision_id = provision_id
        super().__init__(f'provision {provision_id} not found')


class DuplicateExecutionError(ProvisioningError):
    """A pipeline job was redelivered for a provision already in flight."""

    code = 'DUPLICATE_EXECUTION'

    def __init__(self, provision_id: str, reason: str) -> None:
        self.provision_id = provision_id
        self.reason = reason
        super().__init__(f'duplicate execution for provision {provision_id}: {reason}')


class ResourceAlreadyBoundError(ProvisioningError):
    """Raised by the automation driver when the target service reports the
    resource is already registered elsewhere. Recoverable by buying anew."""

    code = 'RESOURCE_ALREADY_BOUND'


class CandidateFailure:
    """Why a single cascade candidate did not yield a purchase."""

    __slots__ = ('provider', 'country', 'error_class', 'reason')

    def __init__(
        self,
        provider: str,
        country: str,
        error_class: ErrorClass,
        reason: str,
    ) -> None:
        self.provider = provider
        self.country = country
        self.error_class = error_class
        self.reason = reason

    def __repr__(self) -> str:
        return (
            f'CandidateFailure(provider={self.provider!r}, country={self.country!r}, '
            f'error_class={self.error_class.value!r}, reason={self.reason!r})'
        )

    def describe(self) -> str:
        return f'{self.provider}/{self.country}: {self.error_class.value} ({self.reason})'


class CascadeExhaustedError(FatalError):
    """Every cascade candidate failed; carries each candidate's failure."""

    code = 'CASCADE_EXHAUSTED'

    def __init__(self, failures: Sequence[CandidateFailure]) -> None:
        self.failures = tuple(failures)
        if self.failures:
            detail = '; '.join(f.describe() for f in self.failures)
        else:
            detail = 'no candidates'
        super().__init__(f'no provider could supply a resource: {detail}')


class InvalidStateTransition(ValueError):
    """Raised for transitions not allowed by the provision state table."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def describe_error(exc: BaseException) -> str:
    """Render an exception as the single human-readable ``last_error`` string."""
    if isinstance(exc, ProvisioningError):
        text = exc.message
    elif isinstance(exc, TimeoutError):
        text = 'operation timed out'
    else:
        detail = str(exc).strip()
        text = f'{type(exc).__name__}: {detail}' if detail else type(exc).__name__
    text = ' '.join(text.split()) or 'unknown error'
    if len(text) > _MAX_ERROR_LENGTH:
        text = text[: _MAX_ERROR_LENGTH - 3] + '...'
    return text
