"""
Notification outbox.

A procedure that must tell a user about its write appends an outbox event in
the same transaction as the write, so the notification can neither be lost
nor sent for a write that rolled back. Delivery turns due events into
``notifications`` rows, one savepoint per event: a failing event is
rescheduled with exponential back-off and the rest of the batch still goes
through. Events whose subscription no longer exists are discarded.

Delivery runs right after the procedure's transaction commits and again from
the periodic worker task in ``app.tasks.outbox_delivery``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import get_settings
from app.core.database import get_session_context
from app.core.realtime import make_change, publish_changes
from app.models import Notification, NotificationOutbox, Subscription
from app.models.base import _utcnow
from app.services.rest import row_to_dict
from klypp_shared.schemas.common import ChangeType, NotificationType
from klypp_shared.schemas.notifications import ChangeEvent

log = structlog.get_logger()

PENDING = "pending"
DELIVERED = "delivered"
DISCARDED = "discarded"


def enqueue(
    session: AsyncSession,
    recipient_id: uuid.UUID,
    subscription_id: Optional[uuid.UUID],
    message: str,
    type: NotificationType = NotificationType.INFO,
) -> NotificationOutbox:
    """Append a notification to the outbox of the session's transaction."""
    event = NotificationOutbox(
        recipient_id=recipient_id,
        subscription_id=subscription_id,
        message=message,
        type=type.value,
    )
    session.add(event)
    return event


def retry_delay(attempts: int) -> timedelta:
    settings = get_settings()
    seconds = settings.outbox_retry_base_seconds * 2 ** max(attempts - 1, 0)
    return timedelta(seconds=min(seconds, settings.outbox_retry_max_seconds))


async def _deliver_one(
    session: AsyncSession, event: NotificationOutbox, now: datetime
) -> Optional[ChangeEvent]:
    if event.subscription_id is not None:
        if await session.get(Subscription, event.subscription_id) is None:
            event.state = DISCARDED
            event.last_error = "subscription no longer exists"
            log.info(
                "outbox.discarded",
                event_id=str(event.event_id),
                subscription_id=str(event.subscription_id),
            )
            return None

    note = Notification(
        user_id=event.recipient_id,
        subscription_id=event.subscription_id,
        message=event.message,
        type=event.type,
    )
    async with session.begin_nested():
        session.add(note)
        await session.flush()

    event.state = DELIVERED
    event.delivered_at = now
    event.notification_id = note.notification_id
    return make_change(ChangeType.INSERT, "notifications", record=row_to_dict(note))


async def deliver_pending(
    session: AsyncSession,
    *,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> tuple[int, list[ChangeEvent]]:
    """Deliver due events. Returns the delivered count and the changes to publish.

    The caller commits; the changes must only be published after that.
    """
    settings = get_settings()
    now = now or _utcnow()
    result = await session.execute(
        select(NotificationOutbox)
        .where(
            NotificationOutbox.state == PENDING,
            NotificationOutbox.next_attempt_at <= now,
        )
        .order_by(NotificationOutbox.created_at)
        .limit(limit or settings.outbox_batch_size)
    )

    changes: list[ChangeEvent] = []
    for event in result.scalars().all():
        try:
            change = await _deliver_one(session, event, now)
        except SQLAlchemyError as exc:
            await session.refresh(event)
            event.attempts += 1
            event.last_error = str(exc)[:500]
            if event.attempts >= settings.outbox_max_attempts:
                event.state = DISCARDED
                log.error(
                    "outbox.gave_up",
                    event_id=str(event.event_id),
                    recipient_id=str(event.recipient_id),
                    attempts=event.attempts,
                    error=event.last_error,
                )
            else:
                event.next_attempt_at = now + retry_delay(event.attempts)
                log.warning(
                    "outbox.delivery_failed",
                    event_id=str(event.event_id),
                    attempts=event.attempts,
                    error=event.last_error,
                )
        else:
            if change is not None:
                changes.append(change)
        session.add(event)

    await session.flush()
    if changes:
        log.info("outbox.delivered", count=len(changes))
    return len(changes), changes


async def flush_outbox(limit: Optional[int] = None) -> int:
    """Deliver due events in a transaction of their own and publish the new rows.

    A database failure here only postpones delivery to the next worker run.
    """
    try:
        async with get_session_context() as session:
            delivered, changes = await deliver_pending(session, limit=limit)
    except SQLAlchemyError as exc:
        log.warning("outbox.flush_failed", error=str(exc))
        return 0
    await publish_changes(changes)
    return delivered
