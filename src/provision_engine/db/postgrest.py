"""Async PostgREST client.

The single point of database HTTP interaction for the PostgREST stores.
The httpx client is injected by the runtime; nothing here is module-level.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

import httpx

from .errors import (
    PostgrestAuthError,
    PostgrestConflictError,
    PostgrestError,
    PostgrestNotFoundError,
)


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


Filters = Optional[Union[Sequence[PostgrestFilter], Mapping[str, Any]]]


def _split_schema_table(table: str, default_schema: str) -> tuple[str, str]:
    # Accept "provisioning.provisions" as well as "provisions". Non-default
    # schemas are selected via Accept-Profile/Content-Profile headers.
    if "." in table:
        schema, name = table.split(".", 1)
        return schema.strip(), name.strip()
    return default_schema, table.strip()


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if value is True:
            return "true"
        if value is False:
            return "false"
        return str(value)

    if op in ("in", "not.in"):
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = []
        for v in value:
            if isinstance(v, str):
                items.append(json.dumps(v))
            elif v is None:
                items.append("null")
            else:
                items.append(str(v))
        return f"({','.join(items)})"

    if value is None and op in ("eq", "neq", "gt", "lt", "like"):
        raise ValueError(f"{op} does not support None; use op='is' with value=None")

    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filters_to_params(filters: Filters) -> dict[str, str]:
    if not filters:
        return {}

    params: dict[str, str] = {}

    if isinstance(filters, Mapping):
        items: Iterable[tuple[str, tuple[str, Any] | Any]] = filters.items()
        for col, spec in items:
            if isinstance(spec, tuple) and len(spec) == 2:
                op, val = spec
            else:
                op, val = "eq", spec
            op_str = str(op)
            params[str(col)] = f"{op_str}.{_encode_filter_value(op_str, val)}"
        return params

    for f in filters:
        params[f.column] = f"{f.op}.{_encode_filter_value(f.op, f.value)}"
    return params


class PostgrestClient:
    """Minimal async PostgREST client (service key) returning plain rows."""

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        http_client: httpx.AsyncClient,
        default_schema: str = "public",
        timeout_seconds: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not service_key:
            raise ValueError("service_key is required")

        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._default_schema = default_schema or "public"
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        return {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }

    def _schema_headers(self, schema: str, method: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        if schema:
            headers["Accept-Profile"] = schema
            if method.upper() in ("POST", "PATCH", "PUT", "DELETE"):
                headers["Content-Profile"] = schema
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        err_cls: type[PostgrestError]
        if resp.status_code in (401, 403):
            err_cls = PostgrestAuthError
        elif resp.status_code == 404:
            err_cls = PostgrestNotFoundError
        elif resp.status_code == 409:
            err_cls = PostgrestConflictError
        else:
            err_cls = PostgrestError

        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
            hint=hint,
        )

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        schema, table_name = _split_schema_table(table, self._default_schema)
        headers = {
            **self._auth_headers(),
            **self._schema_headers(schema, method),
        }
        if prefer:
            headers["Prefer"] = prefer

        resp = await self._client.request(
            method,
            f"{self._base_url}/{table_name}",
            params=params,
            json=json_body,
            headers=headers,
            timeout=self._timeout_seconds,
        )
        self._raise_for_error(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise PostgrestError(
                status_code=500,
                message=f"expected list response from {method} {table_name}",
            )
        return payload

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = _filters_to_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if order:
            params["order"] = order
        return await self._send("GET", table, params=params)

    async def insert(
        self,
        table: str,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        upsert: bool = False,
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        prefer = "return=representation"
        params: dict[str, str] = {}
        if upsert:
            prefer = f"{prefer},resolution=merge-duplicates"
            if on_conflict:
                params["on_conflict"] = on_conflict
        return await self._send("POST", table, params=params or None, json_body=data, prefer=prefer)

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._send(
            "PATCH",
            table,
            params=_filters_to_params(filters),
            json_body=dict(data),
            prefer="return=representation",
        )

    async def delete(
        self,
        table: str,
        filters: Filters,
    ) -> list[dict[str, Any]]:
        return await self._send(
            "DELETE",
            table,
            params=_filters_to_params(filters),
            prefer="return=representation",
        )
