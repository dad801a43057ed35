"""
HTTP implementation of ``RelationalStore`` against the PostgREST-style backend.

Failures are classified into the store-level errors; a call that failed with a
transient error is retried with exponential backoff. Inserts and procedure
calls are not idempotent, so they are retried only when the request never
reached the server.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence, Union

import httpx
import structlog
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from klypp_shared.schemas.common import ErrorBody

from ..errors import (
    DuplicateKey,
    PermissionDenied,
    ProcedureUnavailable,
    StoreError,
    TransientIOError,
)
from .base import FilterLike, to_params
from .sse import SSEChangeChannel

log = structlog.get_logger()

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5

# 409 codes that are not uniqueness violations
FOREIGN_KEY_VIOLATION = "23503"


def _error_body(response: httpx.Response) -> ErrorBody:
    try:
        body = response.json()
    except ValueError:
        return ErrorBody(message=response.text[:200])
    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        body = body["detail"]
    elif isinstance(body, dict) and isinstance(body.get("detail"), str):
        body = {"message": body["detail"]}
    if not isinstance(body, dict):
        return ErrorBody(message=str(body))
    try:
        return ErrorBody.model_validate(body)
    except ValidationError:
        return ErrorBody(message=str(body)[:200])


def classify_response(response: httpx.Response, *, rpc: bool = False, **context: Any) -> StoreError:
    """Map an error response to the store-level error taxonomy."""
    body = _error_body(response)
    message = body.message or response.reason_phrase
    context = {**context, "status": response.status_code, "db_code": body.code}
    status = response.status_code

    if status in (401, 403):
        return PermissionDenied(message, **context)
    if status == 404 and rpc:
        return ProcedureUnavailable(message, **context)
    if status == 409 and body.code != FOREIGN_KEY_VIOLATION:
        return DuplicateKey(message, **context)
    if status >= 500:
        return TransientIOError(message, **context)
    return StoreError(message, **context)


class RestStore:
    """``RelationalStore`` over ``/rest/v1`` and ``/realtime/v1``."""

    def __init__(
        self,
        base_url: str,
        *,
        access_token: Optional[str] = None,
        verify_tls: bool = True,
        request_timeout: float = 30.0,
        retry_attempts: int = MAX_RETRIES,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        realtime_transport: Optional[httpx.AsyncBaseTransport] = None,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 60.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base = retry_base_seconds
        self._transport = transport
        self._realtime_transport = realtime_transport
        self._reconnect_base = reconnect_base_seconds
        self._reconnect_max = reconnect_max_seconds
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        if self._client is not None:
            return
        headers = {"Prefer": "return=representation"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestStore":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[list[tuple[str, str]]] = None,
        json: Any = None,
        idempotent: bool = True,
        rpc: bool = False,
    ) -> Any:
        await self.open()
        assert self._client is not None
        if json is not None:
            json = to_jsonable_python(json)

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.request(method, path, params=params, json=json)
            except httpx.ConnectError as exc:
                error: StoreError = TransientIOError(str(exc) or "connection failed", path=path)
                retry = True
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                error = TransientIOError(str(exc) or type(exc).__name__, path=path)
                retry = idempotent
            else:
                if response.is_success:
                    if not response.content:
                        return None
                    return response.json()
                error = classify_response(response, rpc=rpc, path=path)
                retry = idempotent and isinstance(error, TransientIOError)

            if not retry or attempt >= self._retry_attempts:
                raise error

            backoff = self._retry_base * (2 ** (attempt - 1))
            log.warning(
                "store.retrying",
                method=method,
                path=path,
                attempt=attempt,
                backoff=backoff,
                error=error.message,
            )
            await asyncio.sleep(backoff)

    # ------------------------------------------------------------------
    # RelationalStore
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Sequence[FilterLike] = (),
        *,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params = [("select", columns), *to_params(filters)]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request("GET", f"/rest/v1/{table}", params=params) or []

    async def insert(
        self, table: str, rows: Union[dict[str, Any], list[dict[str, Any]]]
    ) -> list[dict[str, Any]]:
        return await self._request(
            "POST", f"/rest/v1/{table}", json=rows, idempotent=False
        ) or []

    async def update(
        self, table: str, values: dict[str, Any], filters: Sequence[FilterLike]
    ) -> list[dict[str, Any]]:
        return await self._request(
            "PATCH", f"/rest/v1/{table}", params=to_params(filters), json=values
        ) or []

    async def delete(self, table: str, filters: Sequence[FilterLike]) -> list[dict[str, Any]]:
        return await self._request(
            "DELETE", f"/rest/v1/{table}", params=to_params(filters)
        ) or []

    async def rpc(self, name: str, args: dict[str, Any]) -> Any:
        return await self._request(
            "POST", f"/rest/v1/rpc/{name}", json=args, idempotent=False, rpc=True
        )

    def channel(self, table: str, filter: Optional[str] = None) -> SSEChangeChannel:
        return SSEChangeChannel(
            self._base_url,
            table,
            filter,
            access_token=self._access_token,
            verify_tls=self._verify_tls,
            reconnect_base_seconds=self._reconnect_base,
            reconnect_max_seconds=self._reconnect_max,
            transport=self._realtime_transport or self._transport,
        )
