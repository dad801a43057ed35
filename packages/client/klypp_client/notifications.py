"""
Notification dispatcher: creates and updates single-recipient notifications.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog

from klypp_shared.schemas.common import NotificationStatus, NotificationType
from klypp_shared.schemas.notifications import NotificationRow

from .errors import ProcedureUnavailable
from .store.base import RelationalStore, eq

log = structlog.get_logger()

TABLE = "notifications"
CREATE_PROCEDURE = "create_notification"


def invite_message(subscription_name: str) -> str:
    return f"You have been invited to join the {subscription_name} subscription"


def removal_message(subscription_name: str) -> str:
    return f"You have been removed from the {subscription_name} subscription"


class NotificationDispatcher:
    def __init__(self, store: RelationalStore):
        self._store = store

    async def send(
        self,
        recipient_id: uuid.UUID,
        subscription_id: Optional[uuid.UUID],
        message: str,
        type: NotificationType = NotificationType.INFO,
    ) -> Optional[uuid.UUID]:
        """Create a notification for ``recipient_id`` and return its id.

        The recipient is usually another user, whose notification rows the
        sender may not insert directly, so the server-side procedure is tried
        first and a plain insert is the fallback when it is not installed.
        """
        try:
            created = await self._store.rpc(
                CREATE_PROCEDURE,
                {
                    "p_user_id": recipient_id,
                    "p_subscription_id": subscription_id,
                    "p_message": message,
                    "p_type": type.value,
                },
            )
            return uuid.UUID(str(created)) if created else None
        except ProcedureUnavailable:
            log.info("notification.procedure_unavailable", recipient_id=str(recipient_id))

        rows = await self._store.insert(
            TABLE,
            {
                "user_id": recipient_id,
                "subscription_id": subscription_id,
                "message": message,
                "type": type.value,
                "status": NotificationStatus.UNREAD.value,
            },
        )
        return uuid.UUID(str(rows[0]["notification_id"])) if rows else None

    async def mark_invite_read(self, user_id: uuid.UUID, subscription_id: uuid.UUID) -> int:
        """Mark the unread invite notifications for this pair read. Returns the count."""
        rows = await self._store.update(
            TABLE,
            {"status": NotificationStatus.READ.value},
            [
                eq("user_id", user_id),
                eq("subscription_id", subscription_id),
                eq("type", NotificationType.INVITE.value),
                eq("status", NotificationStatus.UNREAD.value),
            ],
        )
        return len(rows)

    async def mark_read(self, notification_id: uuid.UUID) -> bool:
        rows = await self._store.update(
            TABLE,
            {"status": NotificationStatus.READ.value},
            [eq("notification_id", notification_id)],
        )
        return bool(rows)

    async def list_for(self, user_id: uuid.UUID, *, unread_only: bool = False) -> list[NotificationRow]:
        filters = [eq("user_id", user_id)]
        if unread_only:
            filters.append(eq("status", NotificationStatus.UNREAD.value))
        rows = await self._store.select(TABLE, filters, order="created_at.desc")
        return [NotificationRow.model_validate(row) for row in rows]

    async def delete_for_subscription(self, subscription_id: uuid.UUID) -> int:
        rows = await self._store.delete(TABLE, [eq("subscription_id", subscription_id)])
        return len(rows)
