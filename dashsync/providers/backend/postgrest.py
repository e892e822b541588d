from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Sequence

import httpx

from dashsync.core.config import Settings, get_settings
from dashsync.core.errors import (
    BackendConfigError,
    BackendRejectionError,
    BackendTimeoutError,
    NetworkError,
    RateLimitedError,
)
from dashsync.providers.backend.base import ChangeCallback, ChannelHandle, ErrorCallback
from dashsync.providers.backend.changes import RedisChangeFeed
from dashsync.services.optimistic import (
    MUTATION_ID_FIELD,
    OPTIMISTIC_FLAG,
    MutationOperation,
    is_temporary_id,
)
from dashsync.services.query_keys import OrderBy
from dashsync.services.telemetry import record_backend_call


logger = logging.getLogger(__name__)


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filter_params(filter: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    # Equality mappings become PostgREST horizontal filters (col=eq.value).
    params: list[tuple[str, str]] = []
    for column, value in sorted((filter or {}).items()):
        if value is None:
            params.append((column, "is.null"))
        elif isinstance(value, (list, tuple, set, frozenset)):
            params.append((column, f"in.({','.join(_literal(item) for item in value)})"))
        else:
            params.append((column, f"eq.{_literal(value)}"))
    return params


def _retry_after(value: str | None) -> float | None:
    # Only the delta-seconds form; HTTP dates fall back to the configured pause.
    try:
        return max(0.0, float(value)) if value else None
    except ValueError:
        return None


def order_param(order: Sequence[OrderBy] | None) -> str | None:
    if not order:
        return None
    return ",".join(f"{item.column}.{'asc' if item.ascending else 'desc'}" for item in order)


class PostgrestBackend:
    """Data backend speaking the PostgREST dialect of a hosted Postgres gateway.

    Change notifications are not part of the REST surface; they come from an
    optional change feed (Redis pub/sub).
    """

    name = "postgrest"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        schema: str | None = None,
        client: httpx.AsyncClient | None = None,
        change_feed: RedisChangeFeed | None = None,
        id_field: str = "id",
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = (base_url or self._settings.backend_url or "").rstrip("/")
        if not self._base_url:
            raise BackendConfigError("BACKEND_URL is required for the postgrest backend")
        self._api_key = api_key if api_key is not None else self._settings.backend_api_key
        self._schema = schema or self._settings.backend_schema
        self._client = client
        self._owns_client = client is None
        self._change_feed = change_feed
        self._id_field = id_field

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per backend for connection pooling.
        timeout_s = self._settings.fetch_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self, *, write: bool = False, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if write:
            headers["Content-Profile"] = self._schema
        else:
            headers["Accept-Profile"] = self._schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _url(self, table: str) -> str:
        return f"{self._base_url}/rest/v1/{table}"

    async def _request(
        self,
        operation: str,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        headers: dict[str, str],
    ) -> Any:
        client = self._get_client()
        start = time.monotonic()
        success = False
        try:
            response = await client.request(method, self._url(table), params=params, json=json, headers=headers)
            self._raise_for_status(response, table)
            success = True
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(f"{operation} on {table} timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{operation} on {table} failed: {exc.__class__.__name__}") from exc
        finally:
            record_backend_call(
                provider=self.name,
                operation=operation,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
        if not response.content:
            return None
        return response.json()

    def _raise_for_status(self, response: httpx.Response, table: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            raise RateLimitedError(
                f"backend rate limited requests on {table}",
                retry_after_s=_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise NetworkError(f"backend error {status} on {table}", status_code=status)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        details = {key: body[key] for key in ("details", "hint") if body.get(key) is not None}
        raise BackendRejectionError(
            str(body.get("message") or f"backend rejected request ({status})"),
            code=str(body["code"]) if body.get("code") is not None else None,
            status_code=status,
            details=details,
        )

    async def query(
        self,
        table: str,
        filter: Mapping[str, Any] | None = None,
        order: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        columns: str | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", columns or "*")]
        params.extend(filter_params(filter))
        ordering = order_param(order)
        if ordering:
            params.append(("order", ordering))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset:
            params.append(("offset", str(offset)))
        body = await self._request("query", "GET", table, params=params, headers=self._headers())
        return list(body or [])

    def _clean(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        cleaned = {k: v for k, v in payload.items() if k not in (OPTIMISTIC_FLAG, MUTATION_ID_FIELD)}
        # Placeholder ids are client-side only; the server assigns the real one.
        if is_temporary_id(cleaned.get(self._id_field)):
            cleaned.pop(self._id_field)
        return cleaned

    async def mutate(
        self,
        table: str,
        operation: MutationOperation | str,
        payload: Mapping[str, Any],
        row_id: Any = None,
    ) -> dict[str, Any] | None:
        operation = MutationOperation(operation)
        body = self._clean(payload)
        row_id = row_id if row_id is not None else body.get(self._id_field)
        if operation is MutationOperation.INSERT:
            result = await self._request(
                "insert",
                "POST",
                table,
                json=body,
                headers=self._headers(write=True, prefer="return=representation"),
            )
        elif operation is MutationOperation.UPSERT:
            result = await self._request(
                "upsert",
                "POST",
                table,
                json=body,
                headers=self._headers(write=True, prefer="resolution=merge-duplicates,return=representation"),
            )
        else:
            if row_id is None:
                raise ValueError(f"{operation.value} on {table} requires a row identity")
            params = [(self._id_field, f"eq.{_literal(row_id)}")]
            if operation is MutationOperation.UPDATE:
                body.pop(self._id_field, None)
                result = await self._request(
                    "update",
                    "PATCH",
                    table,
                    params=params,
                    json=body,
                    headers=self._headers(write=True, prefer="return=representation"),
                )
                if not result:
                    raise BackendRejectionError(
                        f"{table} row {row_id!r} not found",
                        code="PGRST116",
                        status_code=404,
                    )
            else:
                result = await self._request(
                    "delete",
                    "DELETE",
                    table,
                    params=params,
                    headers=self._headers(write=True, prefer="return=representation"),
                )
        if isinstance(result, list):
            return dict(result[0]) if result else None
        return result

    async def subscribe_changes(
        self,
        table: str,
        filter: str | None,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> ChannelHandle:
        if self._change_feed is None:
            raise BackendConfigError("realtime requires CHANGE_FEED_ENABLED for the postgrest backend")
        return await self._change_feed.subscribe(table, filter, callback, on_error)

    async def aclose(self) -> None:
        if self._change_feed is not None:
            await self._change_feed.aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
