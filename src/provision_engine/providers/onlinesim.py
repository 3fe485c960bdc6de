"""Async adapter for the OnlineSim API.

Every endpoint is a GET with ``apikey`` in the query string. The ``response``
field is loosely typed: a status string (``"TRY_AGAIN_LATER"``,
``"UNDEFINED_COUNTRY"``, ...), the number ``1``, a numeric balance string, an
object, or a list. ``getNum.php`` alone has three success shapes::

    {"response": 1, "tzid": 123}                        # number via getState
    {"response": {"tzid": 123, "number": "+1555..."}}
    {"tzid": 123}                                       # legacy

All of them are parsed into a tagged union here and nowhere else.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Union

import httpx

from ._http import HttpProviderClient
from .base import (
    WAITING,
    PollResult,
    ProviderError,
    ProviderFatalError,
    ProviderRateLimitedError,
    ProviderResourceInvalidError,
    Purchase,
    normalize_phone,
)

logger = logging.getLogger(__name__)

COUNTRY_CODES: Mapping[str, int] = MappingProxyType(
    {
        "united states": 1,
        "usa": 1,
        "us": 1,
        "canada": 1,
        "russia": 7,
        "united kingdom": 16,
        "uk": 16,
        "germany": 43,
        "france": 33,
        "netherlands": 48,
        "poland": 15,
        "spain": 56,
        "italy": 39,
    }
)

_WAITING_STATES = frozenset({"TZ_NUM_WAIT", "TZ_NUM_ANSWER_WAIT", "TZ_NUM_PREPARE"})
_DELIVERED_STATES = frozenset({"TZ_NUM_ANSWER"})
_CANCELLED_STATES = frozenset({"TZ_NUM_CANCEL", "TZ_NUM_CANCEL_WAIT", "TZ_OVER_EMPTY", "TZ_OVER_OK"})
_INVALID_SIGNALS = frozenset({"ERROR_NO_OPERATIONS", "ERROR_WRONG_TZID", "TZID_NO_LONGER_VALID"})
_RATE_LIMIT_SIGNALS = frozenset({"TRY_AGAIN_LATER", "EXCEEDED_CONCURRENT_OPERATIONS"})
_FATAL_SIGNALS = frozenset(
    {
        "UNDEFINED_COUNTRY",
        "UNDEFINED_SERVICE",
        "NO_NUMBER",
        "WARNING_LOW_BALANCE",
        "ACCOUNT_BLOCKED",
        "ERROR_WRONG_KEY",
        "ERROR_NO_KEY",
    }
)


# ── Purchase response union ─────────────────────────────────────


@dataclass(frozen=True, slots=True)
class _NumberIssued:
    tzid: str
    number: str | None


@dataclass(frozen=True, slots=True)
class _StatusSignal:
    value: str


_PurchaseResponse = Union[_NumberIssued, _StatusSignal]


def parse_purchase_response(payload: Any) -> _PurchaseResponse:
    """Normalize every known ``getNum.php`` body shape."""
    if not isinstance(payload, dict):
        return _StatusSignal(str(payload).strip() or "EMPTY_RESPONSE")

    response = payload.get("response")
    if isinstance(response, dict) and response.get("tzid"):
        number = response.get("number")
        return _NumberIssued(str(response["tzid"]), str(number) if number else None)
    if payload.get("tzid") and (response is None or str(response) == "1"):
        number = payload.get("number")
        return _NumberIssued(str(payload["tzid"]), str(number) if number else None)
    if payload.get("error"):
        return _StatusSignal(str(payload["error"]))
    return _StatusSignal(str(response) if response is not None else "EMPTY_RESPONSE")


def resolve_country_code(country: str) -> int:
    selector = country.strip()
    if selector.isdigit():
        return int(selector)
    try:
        return COUNTRY_CODES[selector.lower()]
    except KeyError:
        raise ProviderFatalError("onlinesim", f"unknown country: {country}", code="UNDEFINED_COUNTRY") from None


class OnlineSimClient(HttpProviderClient):
    """OnlineSim provider adapter."""

    name = "onlinesim"

    def __init__(
        self,
        *,
        api_key: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://onlinesim.io/api",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        super().__init__(base_url=base_url, http_client=http_client, **kwargs)
        self._api_key = api_key

    def _auth_params(self) -> dict[str, str]:
        return {"apikey": self._api_key}

    def _raise_for_signal(self, signal: str) -> None:
        upper = signal.upper()
        if upper in _RATE_LIMIT_SIGNALS:
            raise ProviderRateLimitedError(self.name, signal, code=upper)
        if upper in _INVALID_SIGNALS:
            raise ProviderResourceInvalidError(self.name, signal, code=upper)
        if upper in _FATAL_SIGNALS or upper.startswith("UNDEFINED"):
            raise ProviderFatalError(self.name, signal, code=upper)

    def _check_payload(self, payload: Any) -> None:
        if isinstance(payload, dict):
            for key in ("error", "response"):
                value = payload.get(key)
                if isinstance(value, str):
                    self._raise_for_signal(value)
        elif isinstance(payload, str):
            self._raise_for_signal(payload)

    # ── Public API ───────────────────────────────────────────────

    async def get_balance(self) -> float:
        payload = await self._get("/getBalance.php")
        if isinstance(payload, dict):
            for key in ("balance", "response"):
                value = payload.get(key)
                if value is None or isinstance(value, bool):
                    continue
                try:
                    return float(value)
                except (TypeError, ValueError):
                    continue
        raise ProviderError(self.name, f"invalid balance response: {str(payload)[:200]}")

    async def check_availability(self, country: str, service: str) -> bool:
        code = resolve_country_code(country)
        payload = await self._get("/getServices.php", {"country": str(code)})
        services = payload.get("response") if isinstance(payload, dict) else payload
        if isinstance(services, dict):
            services = list(services.values())
        if not isinstance(services, list):
            raise ProviderError(self.name, "unexpected getServices response")

        wanted = service.strip().lower()
        for entry in services:
            if not isinstance(entry, dict):
                continue
            text = str(entry.get("service_text") or entry.get("service") or "").lower()
            if wanted in text or wanted in text.replace(" ", ""):
                try:
                    return int(entry.get("count") or 0) > 0
                except (TypeError, ValueError):
                    return False
        return False

    async def buy(self, country: str, service: str) -> Purchase:
        code = resolve_country_code(country)
        payload = await self._get(
            "/getNum.php",
            {"service": service, "country": str(code)},
            retry=False,
        )
        parsed = parse_purchase_response(payload)
        if isinstance(parsed, _StatusSignal):
            self._raise_for_signal(parsed.value)
            raise ProviderError(self.name, f"unexpected purchase response: {parsed.value[:200]}")

        number = parsed.number
        if not number:
            number = await self._lookup_number(parsed.tzid)

        purchase = Purchase(
            provider=self.name,
            external_id=parsed.tzid,
            resource_value=normalize_phone(number),
            country=country,
            service=service,
        )
        logger.info(
            "onlinesim number purchased: tzid=%s",
            purchase.external_id,
            extra={"provider": self.name, "external_id": purchase.external_id, "country": country},
        )
        return purchase

    async def _lookup_number(self, tzid: str) -> str:
        for entry in await self._state_entries(tzid):
            if entry.get("number"):
                return str(entry["number"])
        raise ProviderError(self.name, f"no number reported for tzid {tzid}")

    async def _state_entries(self, tzid: str) -> list[dict[str, Any]]:
        payload = await self._get("/getState.php", {"tzid": tzid})
        if isinstance(payload, list):
            return [entry for entry in payload if isinstance(entry, dict)]
        if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
            return [payload["response"]]
        return []

    async def mark_ready(self, external_id: str) -> None:
        # OnlineSim forwards codes as soon as the number is issued.
        return None

    async def poll_once(self, external_id: str) -> PollResult:
        for entry in await self._state_entries(external_id):
            if str(entry.get("tzid", external_id)) != str(external_id):
                continue
            status = str(entry.get("response") or entry.get("status") or "")
            message = entry.get("msg") or entry.get("text")
            if isinstance(message, list):
                message = message[-1].get("msg") if message and isinstance(message[-1], dict) else None
            if status in _DELIVERED_STATES and message:
                return PollResult(delivered=str(message))
            if status in _CANCELLED_STATES:
                raise ProviderResourceInvalidError(self.name, f"tzid {external_id} {status}", code=status)
            if status in _WAITING_STATES:
                return WAITING
        return WAITING
