"""Resource provider adapters."""

from .base import (
    PollResult,
    ProviderClient,
    ProviderError,
    ProviderFatalError,
    ProviderRateLimitedError,
    ProviderResourceInvalidError,
    Purchase,
)
from .onlinesim import OnlineSimClient
from .registry import ProviderRegistry
from .smsman import SmsManClient

__all__ = [
    "OnlineSimClient",
    "PollResult",
    "ProviderClient",
    "ProviderError",
    "ProviderFatalError",
    "ProviderRateLimitedError",
    "ProviderRegistry",
    "ProviderResourceInvalidError",
    "Purchase",
    "SmsManClient",
]
