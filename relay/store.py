"""Persistent store client.

The relay only needs three independently atomic operations (insert one
row, update rows matching a filter, select rows matching a filter), so the
store is described by a small protocol. SupabaseStore implements it over
Supabase's PostgREST endpoint with httpx.

Filters map a column to a value (equality) or to an (operator, value)
tuple, e.g. {"status": "needs_input", "updated_at": ("lt", cutoff)}.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx
import structlog

from relay.config import RelaySettings
from relay.errors import ConfigError, StoreError

logger = structlog.get_logger(__name__)

Row = dict[str, Any]
Filters = dict[str, Any]

OPERATORS = frozenset({"eq", "neq", "lt", "lte", "gt", "gte", "ilike", "is", "in"})


class Store(Protocol):
    """Row store used by the task engine and conversation memory."""

    async def insert(self, table: str, row: Row) -> Row | None: ...

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]: ...

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]: ...


def split_filter(value: Any) -> tuple[str, Any]:
    """Return (operator, operand) for a filter value."""
    if isinstance(value, tuple) and len(value) == 2 and value[0] in OPERATORS:
        return value[0], value[1]
    return "eq", value


def _format_operand(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return "(" + ",".join(_format_operand(v) for v in value) + ")"
    return str(value)


def build_filter_params(filters: Filters | None) -> list[tuple[str, str]]:
    """Translate filters into PostgREST query parameters.

    Example:
        {"chat_id": "42", "updated_at": ("lt", "2026-01-01T00:00:00+00:00")}
        -> [("chat_id", "eq.42"), ("updated_at", "lt.2026-01-01T00:00:00+00:00")]
    """
    params = []
    for column, value in (filters or {}).items():
        operator, operand = split_filter(value)
        params.append((column, f"{operator}.{_format_operand(operand)}"))
    return params


class SupabaseStore:
    """Store backed by Supabase (PostgREST + edge functions).

    Usage:
        async with SupabaseStore.from_settings(settings) as store:
            rows = await store.select("async_tasks", {"chat_id": "42"})
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the store.

        Args:
            url: Project URL, e.g. https://abc.supabase.co
            key: Service-role or anon key
            timeout: Request timeout in seconds
            client: HTTP client to use; one is created if None
        """
        self.url = url.rstrip("/")
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> SupabaseStore:
        if not settings.supabase_url or not settings.supabase_key:
            raise ConfigError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY) must be set"
            )
        return cls(
            settings.supabase_url,
            settings.supabase_key,
            timeout=settings.store_timeout_seconds,
        )

    async def __aenter__(self) -> SupabaseStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method, f"{self.url}{path}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {path} failed with {e.response.status_code}: "
                f"{e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{method} {path} returned invalid JSON") from e

    async def insert(self, table: str, row: Row) -> Row | None:
        rows = await self._request(
            "POST", f"/rest/v1/{table}", json=row, prefer="return=representation"
        )
        return rows[0] if rows else None

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:
        if not filters:
            raise StoreError(f"refusing unfiltered update of {table}")
        rows = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=build_filter_params(filters),
            json=values,
            prefer="return=representation",
        )
        return rows or []

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", "*"), *build_filter_params(filters)]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        return rows or []

    async def invoke_function(self, name: str, payload: dict[str, Any]) -> Any:
        """Call a Supabase edge function and return its JSON body."""
        return await self._request("POST", f"/functions/v1/{name}", json=payload)
