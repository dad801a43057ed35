"""
KlyppClient: the membership core wired together for one actor.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog

from klypp_shared.schemas.common import MembershipDecision
from klypp_shared.schemas.memberships import MemberInfo, MembershipRow
from klypp_shared.schemas.notifications import NotificationRow

from .cascade import CascadeDeleteCoordinator, CascadeReport
from .config import ClientConfig
from .errors import StoreError
from .invitations import InvitationManager
from .memberships import MembershipStore
from .notifications import NotificationDispatcher
from .realtime import OnChange, RealtimeChangeListener, RealtimeSubscription
from .responses import MembershipResponseHandler
from .result import Result
from .store.base import RelationalStore
from .store.rest import RestStore
from .subscriptions import SubscriptionStore

log = structlog.get_logger()


class KlyppClient:
    """All membership operations on behalf of ``actor_id``."""

    def __init__(self, store: RelationalStore, actor_id: uuid.UUID):
        self.store = store
        self.actor_id = actor_id
        self.memberships = MembershipStore(store)
        self.notifications = NotificationDispatcher(store)
        self.subscriptions = SubscriptionStore(store, self.memberships)
        self.invitations = InvitationManager(
            store, self.memberships, self.notifications, self.subscriptions
        )
        self.responses = MembershipResponseHandler(
            self.memberships, self.notifications, self.subscriptions
        )
        self.cascade = CascadeDeleteCoordinator(
            store, self.memberships, self.notifications, self.subscriptions
        )
        self.realtime = RealtimeChangeListener(store)

    @classmethod
    def from_config(
        cls, config: ClientConfig, actor_id: Optional[uuid.UUID] = None
    ) -> "KlyppClient":
        actor = actor_id or config.auth.user_id
        if actor is None:
            raise ValueError("No actor: set auth.user_id in the config or pass actor_id")
        store = RestStore(
            config.backend.url,
            access_token=config.auth.access_token,
            verify_tls=config.backend.verify_tls,
            request_timeout=config.backend.request_timeout_seconds,
            retry_attempts=config.retry.attempts,
            retry_base_seconds=config.retry.base_seconds,
            reconnect_base_seconds=config.realtime.reconnect_base_seconds,
            reconnect_max_seconds=config.realtime.reconnect_max_seconds,
        )
        return cls(store, actor)

    async def close(self) -> None:
        await self.realtime.close_all()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "KlyppClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def invite(self, subscription_id: uuid.UUID, identifier: str) -> Result[MembershipRow]:
        return await self.invitations.invite(subscription_id, identifier, self.actor_id)

    async def respond(
        self, subscription_id: uuid.UUID, decision: MembershipDecision
    ) -> Result[None]:
        return await self.responses.respond(subscription_id, self.actor_id, decision)

    async def leave(self, subscription_id: uuid.UUID) -> Result[None]:
        return await self.responses.leave(subscription_id, self.actor_id)

    async def delete_subscription(self, subscription_id: uuid.UUID) -> Result[CascadeReport]:
        return await self.cascade.delete_subscription(subscription_id, self.actor_id)

    async def members(self, subscription_id: uuid.UUID) -> Result[list[MemberInfo]]:
        return await self.invitations.list_members(subscription_id)

    async def remove_member(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> Result[None]:
        return await self.invitations.remove_member(subscription_id, user_id, self.actor_id)

    async def my_notifications(self, *, unread_only: bool = False) -> Result[list[NotificationRow]]:
        try:
            return Result.success(
                await self.notifications.list_for(self.actor_id, unread_only=unread_only)
            )
        except StoreError as exc:
            log.warning("notifications.list_failed", user_id=str(self.actor_id), error=exc.message)
            return Result.failure(exc)

    async def mark_read(self, notification_id: uuid.UUID) -> Result[bool]:
        try:
            return Result.success(await self.notifications.mark_read(notification_id))
        except StoreError as exc:
            log.warning("notifications.mark_read_failed", notification_id=str(notification_id), error=exc.message)
            return Result.failure(exc)

    async def watch_notifications(self, on_change: OnChange) -> RealtimeSubscription:
        return await self.realtime.subscribe(self.actor_id, on_change)
