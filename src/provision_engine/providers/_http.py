"""Shared async HTTP plumbing for provider adapters.

Read-only calls get exponential backoff with full jitter for transient
errors and respect ``Retry-After`` on 429 responses. Purchase calls pass
``retry=False``: a timed-out purchase may still have succeeded upstream, so
it is surfaced to the cascade instead of being repeated.

Credentials travel as query parameters on these APIs; log lines carry the
path only.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from .base import (
    ProviderError,
    ProviderFatalError,
    ProviderRateLimitedError,
    classify_error,
)
from provision_engine.errors import ErrorClass

logger = logging.getLogger(__name__)

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Default retry configuration.
_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds


class HttpProviderClient:
    """Base for adapters that talk JSON over GET endpoints."""

    name = "provider"

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.AsyncClient,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._client = http_client
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    def _auth_params(self) -> dict[str, str]:
        return {}

    def classify(self, error: BaseException) -> ErrorClass:
        return classify_error(error)

    # ── Transport ────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        retry: bool = True,
    ) -> httpx.Response:
        """Execute an HTTP request, retrying transient failures when allowed."""
        url = f"{self._base_url}{path}"
        query = {**self._auth_params(), **(params or {})}
        max_retries = self._max_retries if retry else 0

        for attempt in range(max_retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    params=query,
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                if attempt < max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s request timeout on %s (attempt %d/%d), retrying in %.1fs",
                        self.name,
                        path,
                        attempt + 1,
                        max_retries + 1,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                raise ProviderError(self.name, f"request to {path} timed out") from e
            except httpx.TransportError as e:
                if attempt < max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s transport error on %s (attempt %d/%d), retrying in %.1fs",
                        self.name,
                        path,
                        attempt + 1,
                        max_retries + 1,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                raise ProviderError(self.name, f"transport error on {path}: {e}") from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES or attempt >= max_retries:
                return resp

            delay = self._retry_after_delay(resp, attempt)
            logger.warning(
                "%s %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                self.name,
                method,
                path,
                resp.status_code,
                attempt + 1,
                max_retries + 1,
                delay,
            )
            await self._sleep(delay)

        raise ProviderError(self.name, "exhausted retries with no response")

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return min(max(float(retry_after), 0.1), self._max_delay)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    # ── Decoding ─────────────────────────────────────────────────

    def _check_payload(self, payload: Any) -> None:
        """Adapter hook: raise for error signals embedded in a 2xx/4xx body."""

    async def _get(
        self,
        path: str,
        params: dict[str, str] | None = None,
        *,
        retry: bool = True,
    ) -> Any:
        resp = await self._request_with_retry("GET", path, params=params, retry=retry)
        return self._decode(resp, path)

    def _decode(self, resp: httpx.Response, path: str) -> Any:
        status = resp.status_code
        if status == 429:
            raise ProviderRateLimitedError(self.name, f"rate limited on {path}", status_code=status)
        if status in (401, 403):
            raise ProviderFatalError(self.name, f"authentication rejected on {path}", status_code=status)
        if status >= 500:
            raise ProviderError(self.name, f"HTTP {status} on {path}", status_code=status)

        try:
            payload: Any = resp.json()
        except ValueError:
            payload = resp.text.strip()

        self._check_payload(payload)

        if status >= 400:
            raise ProviderFatalError(
                self.name,
                f"HTTP {status} on {path}: {str(payload)[:200]}",
                status_code=status,
            )
        return payload
