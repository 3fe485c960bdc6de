"""Named provider clients, built once at process start."""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Sequence

import httpx

from .base import ProviderClient
from .onlinesim import OnlineSimClient
from .smsman import SmsManClient

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Immutable lookup of provider clients by name.

    ``provider_order`` decides which provider is tried first within a
    country when the cascade builds its built-in candidate list.
    """

    def __init__(
        self,
        clients: Iterable[ProviderClient],
        *,
        provider_order: Sequence[str] | None = None,
    ) -> None:
        by_name: dict[str, ProviderClient] = {}
        for client in clients:
            if client.name in by_name:
                raise ValueError(f"duplicate provider name: {client.name}")
            by_name[client.name] = client
        self._clients: Mapping[str, ProviderClient] = by_name
        order = list(provider_order) if provider_order else list(by_name)
        self._order = tuple(name for name in order if name in by_name)

    @classmethod
    def from_settings(cls, settings, http_client: httpx.AsyncClient) -> ProviderRegistry:
        """Build clients for every provider with configured credentials."""
        clients: list[ProviderClient] = []
        if settings.onlinesim_api_key:
            clients.append(
                OnlineSimClient(
                    api_key=settings.onlinesim_api_key,
                    base_url=settings.onlinesim_base_url,
                    http_client=http_client,
                    timeout_seconds=settings.provider_timeout_seconds,
                )
            )
        if settings.smsman_token:
            clients.append(
                SmsManClient(
                    token=settings.smsman_token,
                    base_url=settings.smsman_api_url,
                    http_client=http_client,
                    timeout_seconds=settings.provider_timeout_seconds,
                )
            )
        if not clients:
            logger.warning("No provider credentials configured; cascade will have no candidates")
        return cls(clients, provider_order=settings.provider_order)

    def get(self, name: str) -> ProviderClient:
        try:
            return self._clients[name]
        except KeyError:
            raise KeyError(f"unknown provider: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._clients

    def names(self) -> tuple[str, ...]:
        """Provider names in cascade priority order."""
        return self._order
