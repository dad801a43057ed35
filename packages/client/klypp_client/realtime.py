"""
Realtime change listener: one live notifications channel per user.

``subscribe`` returns an owned handle. The caller releases it with
``await handle.unsubscribe()`` or by using it as an async context manager;
releasing twice, or after the listener already tore the channel down, is a
no-op.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, Union

import structlog

from .store.base import ChangeChannel, RelationalStore

log = structlog.get_logger()

TABLE = "notifications"

OnChange = Callable[[], Union[None, Awaitable[None]]]


class RealtimeSubscription:
    def __init__(self, listener: "RealtimeChangeListener", user_id: uuid.UUID, channel: ChangeChannel):
        self._listener = listener
        self.user_id = user_id
        self.channel = channel
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._listener._release(self)

    async def __aenter__(self) -> "RealtimeSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unsubscribe()


class RealtimeChangeListener:
    def __init__(self, store: RelationalStore):
        self._store = store
        self._active: dict[uuid.UUID, RealtimeSubscription] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def active_for(self, user_id: uuid.UUID) -> RealtimeSubscription | None:
        return self._active.get(user_id)

    async def subscribe(self, user_id: uuid.UUID, on_change: OnChange) -> RealtimeSubscription:
        """Invoke ``on_change()`` on every insert, update or delete of the user's notifications.

        Overlapping calls for the same user are serialized, so at most one
        channel per user is ever live.
        """
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            previous = self._active.pop(user_id, None)
            if previous is not None:
                log.info("realtime.replacing_channel", user_id=str(user_id))
                await previous.unsubscribe()

            async def handle(_payload: dict[str, Any]) -> None:
                try:
                    outcome = on_change()
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    log.exception("realtime.callback_failed", user_id=str(user_id))

            channel = self._store.channel(TABLE, f"user_id=eq.{user_id}")
            channel.on_change(handle)
            await channel.start()

            subscription = RealtimeSubscription(self, user_id, channel)
            self._active[user_id] = subscription
        log.info("realtime.subscribed_user", user_id=str(user_id))
        return subscription

    async def _release(self, subscription: RealtimeSubscription) -> None:
        if self._active.get(subscription.user_id) is subscription:
            del self._active[subscription.user_id]
        await subscription.channel.stop()

    async def close_all(self) -> None:
        for subscription in list(self._active.values()):
            await subscription.unsubscribe()
