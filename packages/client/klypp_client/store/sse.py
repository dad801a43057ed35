"""
SSE consumer for the backend's realtime change stream.

Keeps one persistent connection per channel with:
- Automatic reconnection with exponential backoff, except after 401/403
- Dispatch of ``change`` events to registered handlers (sync or async)
- Graceful stop that is safe to call more than once
"""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Optional

import httpx
import structlog

from .base import ChangeHandler

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0


class SSEChangeChannel:
    """
    One live change channel: ``GET /realtime/v1/stream?table=...&filter=...``.

    Handler failures are logged and never stop the channel.
    """

    def __init__(
        self,
        base_url: str,
        table: str,
        filter: Optional[str] = None,
        *,
        access_token: Optional[str] = None,
        verify_tls: bool = True,
        reconnect_base_seconds: float = RECONNECT_BASE_SECONDS,
        reconnect_max_seconds: float = RECONNECT_MAX_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self.table = table
        self.filter = filter
        self._access_token = access_token
        self._verify_tls = verify_tls
        self._reconnect_base = reconnect_base_seconds
        self._reconnect_max = reconnect_max_seconds
        self._transport = transport

        self._handlers: list[ChangeHandler] = []
        self._running = False
        self._denied = False
        self._subscribed = asyncio.Event()
        self._reconnect_count = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def denied(self) -> bool:
        """True once the server refused the stream with 401 or 403."""
        return self._denied

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    def on_change(self, handler: ChangeHandler) -> None:
        self._handlers.append(handler)

    async def wait_subscribed(self, timeout: float = 5.0) -> bool:
        """Wait until the server confirmed the subscription."""
        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._denied = False
        self._task = asyncio.create_task(self._listen_loop())

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._subscribed.clear()
        log.info("realtime.channel_stopped", table=self.table, filter=self.filter)

    async def _listen_loop(self) -> None:
        backoff = self._reconnect_base

        while self._running:
            try:
                await self._connect_and_stream()
                backoff = self._reconnect_base
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, OSError) as exc:
                log.warning(
                    "realtime.connection_lost",
                    table=self.table,
                    filter=self.filter,
                    error=str(exc),
                    backoff=backoff,
                )
            self._subscribed.clear()

            if not self._running:
                break

            self._reconnect_count += 1
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, self._reconnect_max)

    async def _connect_and_stream(self) -> None:
        headers = {"Accept": "text/event-stream"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        params = {"table": self.table}
        if self.filter:
            params["filter"] = self.filter

        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(None),
            verify=self._verify_tls,
            transport=self._transport,
        ) as client:
            async with client.stream(
                "GET", "/realtime/v1/stream", params=params, headers=headers
            ) as response:
                if response.status_code in (401, 403):
                    # Retrying cannot help; the channel stays stopped
                    self._running = False
                    self._denied = True
                    log.error(
                        "realtime.permission_denied",
                        table=self.table,
                        filter=self.filter,
                        status=response.status_code,
                    )
                    return
                response.raise_for_status()

                current_event_type: str | None = None
                current_data_lines: list[str] = []

                async for line in response.aiter_lines():
                    if not self._running:
                        break

                    line = line.rstrip("\r\n")
                    if line.startswith("event:"):
                        current_event_type = line[6:].strip()
                    elif line.startswith("data:"):
                        current_data_lines.append(line[5:].strip())
                    elif line.startswith(":"):
                        # Keep-alive
                        pass
                    elif line == "":
                        if current_data_lines:
                            await self._dispatch(current_event_type, current_data_lines)
                        current_event_type = None
                        current_data_lines = []

    async def _dispatch(self, event_type: str | None, data_lines: list[str]) -> None:
        if event_type == "subscribed":
            self._subscribed.set()
            log.info("realtime.subscribed", table=self.table, filter=self.filter)
            return
        if event_type != "change":
            return

        data_str = "\n".join(data_lines)
        try:
            payload: dict[str, Any] = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning("realtime.parse_error", data=data_str[:200])
            return

        for handler in self._handlers:
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                log.exception("realtime.handler_error", table=self.table, filter=self.filter)
