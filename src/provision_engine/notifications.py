"""Fire-and-forget broadcast of provisioning events.

``Notifier.publish`` never blocks the caller and never raises: delivery runs
as a background task and failures are logged and dropped. Payloads are
sanitized so credentials cannot leak to observers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .protocols import NotificationSink

logger = logging.getLogger(__name__)

STATE_CHANGED = "provision.state_changed"
CODE_RECEIVED = "provision.code_received"
SESSION_READY = "provision.session_ready"

# Keys that must never appear in broadcast payloads.
_SENSITIVE_KEYS = frozenset({
    "authorization",
    "apikey",
    "api_key",
    "token",
    "service_key",
    "secret",
    "password",
})


def _sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy payload with sensitive keys redacted."""
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_payload(value)
        else:
            sanitized[key] = value
    return sanitized


class Notifier:
    """Schedules deliveries to a sink without awaiting them."""

    def __init__(self, sink: NotificationSink | None = None) -> None:
        self._sink = sink
        self._pending: set[asyncio.Task[None]] = set()

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        if self._sink is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._deliver(event, _sanitize_payload(payload))
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._sink.deliver(event, payload)
        except Exception:
            logger.exception(
                "Notification delivery failed for event=%s provision=%s",
                event,
                payload.get("provision_id", "?"),
            )

    async def drain(self) -> None:
        """Wait for every outstanding delivery (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class HttpBroadcastSink:
    """POSTs ``{"event": ..., "data": ...}`` to a broadcast endpoint."""

    def __init__(
        self,
        *,
        url: str,
        http_client: httpx.AsyncClient,
        timeout_seconds: float = 5.0,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._client = http_client
        self._timeout = timeout_seconds

    async def deliver(self, event: str, payload: dict[str, Any]) -> None:
        resp = await self._client.post(
            self._url,
            json={"event": event, "data": payload},
            timeout=self._timeout,
        )
        resp.raise_for_status()
