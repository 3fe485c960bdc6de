"""Async adapter for the SMS-Man control API.

Every endpoint is a GET with ``token`` in the query string. Errors arrive
as ``{"error_code": ..., "error_msg": ...}`` bodies, usually with HTTP 200,
so classification looks at the body before the status code.

Country and application selectors accept either a numeric id or a name.
Name resolution hits ``/countries`` and ``/applications``; both lists are
reference data and cached on the instance after the first fetch.
"""

from __future__ import annotations

import logging
from typing import Any

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

# error_code / error_msg fragments, matched case-insensitively.
_WAITING_SIGNALS = ("wait_sms", "wait")
_INVALID_SIGNALS = ("wrong_request", "request_not_found", "not_found", "cancel", "reject", "expired")
_RATE_LIMIT_SIGNALS = ("too_many", "too many", "limit", "try later", "try_later")
_FATAL_SIGNALS = (
    "balance",
    "money",
    "token",
    "wrong_country",
    "wrong_application",
    "country",
    "application",
)


def _error_text(payload: dict[str, Any]) -> str:
    code = str(payload.get("error_code") or "")
    msg = str(payload.get("error_msg") or "")
    return f"{code} {msg}".strip().lower()


def _matches(text: str, signals: tuple[str, ...]) -> bool:
    return any(signal in text for signal in signals)


class SmsManClient(HttpProviderClient):
    """SMS-Man provider adapter."""

    name = "smsman"

    def __init__(
        self,
        *,
        token: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.sms-man.com/control",
        **kwargs: Any,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        super().__init__(base_url=base_url, http_client=http_client, **kwargs)
        self._token = token
        self._countries: list[dict[str, str]] | None = None
        self._applications: list[dict[str, str]] | None = None

    def _auth_params(self) -> dict[str, str]:
        return {"token": self._token}

    def _check_payload(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("error_code"):
            return
        # A purchase can succeed with a "reserved funds" warning attached.
        if payload.get("request_id") and payload.get("number"):
            return
        text = _error_text(payload)
        code = str(payload.get("error_code"))
        if _matches(text, _WAITING_SIGNALS):
            return
        if _matches(text, _RATE_LIMIT_SIGNALS):
            raise ProviderRateLimitedError(self.name, text, code=code)
        if _matches(text, _INVALID_SIGNALS):
            raise ProviderResourceInvalidError(self.name, text, code=code)
        if _matches(text, _FATAL_SIGNALS):
            raise ProviderFatalError(self.name, text, code=code)
        raise ProviderError(self.name, text, code=code)

    # ── Reference data ───────────────────────────────────────────

    async def _reference_list(self, path: str) -> list[dict[str, str]]:
        payload = await self._get(path)
        if isinstance(payload, dict):
            items = payload.values()
        elif isinstance(payload, list):
            items = payload
        else:
            raise ProviderError(self.name, f"unexpected {path} response")
        return [
            {
                "id": str(item.get("id", "")),
                "title": str(item.get("title", "")),
                "code": str(item.get("code", "")),
            }
            for item in items
            if isinstance(item, dict)
        ]

    async def resolve_country_id(self, country: str) -> str:
        if country.strip().isdigit():
            return country.strip()
        if self._countries is None:
            self._countries = await self._reference_list("/countries")
        wanted = country.strip().lower()
        for item in self._countries:
            if item["title"].lower() == wanted or item["code"].lower() == wanted:
                return item["id"]
        raise ProviderFatalError(self.name, f"unknown country: {country}", code="unknown_country")

    async def resolve_application_id(self, service: str) -> str:
        if service.strip().isdigit():
            return service.strip()
        if self._applications is None:
            self._applications = await self._reference_list("/applications")
        wanted = service.strip().lower()
        for item in self._applications:
            if wanted in item["title"].lower() or wanted in item["code"].lower():
                return item["id"]
        raise ProviderFatalError(self.name, f"unknown service: {service}", code="unknown_service")

    # ── Public API ───────────────────────────────────────────────

    async def get_balance(self) -> float:
        payload = await self._get("/get-balance")
        if isinstance(payload, dict) and payload.get("balance") is not None:
            try:
                return float(payload["balance"])
            except (TypeError, ValueError):
                pass
        raise ProviderError(self.name, f"invalid balance response: {str(payload)[:200]}")

    async def check_availability(self, country: str, service: str) -> bool:
        country_id = await self.resolve_country_id(country)
        application_id = await self.resolve_application_id(service)
        payload = await self._get(
            "/get-prices",
            {"country_id": country_id, "application_id": application_id},
        )
        if isinstance(payload, dict):
            entries = list(payload.values())
        elif isinstance(payload, list):
            entries = payload
        else:
            return False
        if not entries or not isinstance(entries[0], dict):
            return False
        try:
            return int(entries[0].get("count") or 0) > 0
        except (TypeError, ValueError):
            return False

    async def buy(self, country: str, service: str) -> Purchase:
        country_id = await self.resolve_country_id(country)
        application_id = await self.resolve_application_id(service)
        payload = await self._get(
            "/get-number",
            {"country_id": country_id, "application_id": application_id},
            retry=False,
        )
        if not isinstance(payload, dict) or not payload.get("request_id") or not payload.get("number"):
            raise ProviderError(self.name, f"invalid purchase response: {str(payload)[:200]}")

        purchase = Purchase(
            provider=self.name,
            external_id=str(payload["request_id"]),
            resource_value=normalize_phone(payload["number"]),
            country=country,
            service=service,
        )
        logger.info(
            "smsman number purchased: request_id=%s",
            purchase.external_id,
            extra={"provider": self.name, "external_id": purchase.external_id, "country": country},
        )
        return purchase

    async def mark_ready(self, external_id: str) -> None:
        await self._get("/set-status", {"request_id": external_id, "status": "ready"})

    async def poll_once(self, external_id: str) -> PollResult:
        payload = await self._get("/get-sms", {"request_id": external_id})
        if isinstance(payload, dict) and payload.get("sms_code"):
            return PollResult(delivered=str(payload["sms_code"]))
        return WAITING
