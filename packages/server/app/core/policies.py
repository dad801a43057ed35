"""
Row access policies, applied as extra WHERE clauses on every table call.

Equivalent to the row level security rules of the hosted database:

| table                | read                         | update / delete               | insert                      |
|----------------------|------------------------------|-------------------------------|-----------------------------|
| users                | everyone (configurable)      | self (no delete)              | self                        |
| subscriptions        | admin, accepted members      | admin                         | admin_id = actor            |
| subscription_members | member, subscription admin   | member, subscription admin    | subscription admin          |
| notifications        | recipient                    | recipient; delete also admin  | anyone                      |

Server-side procedures run with definer rights and do not pass through here.
"""

from __future__ import annotations

import uuid
from typing import Literal

from sqlalchemy import ColumnElement, and_, exists, false, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from app.core.config import get_settings
from app.models import Notification, Subscription, SubscriptionMember, User

Action = Literal["select", "update", "delete"]


def _admin_subscription_ids(actor_id: uuid.UUID):
    return select(Subscription.subscription_id).where(Subscription.admin_id == actor_id)


def _accepted_subscription_ids(actor_id: uuid.UUID):
    return select(SubscriptionMember.subscription_id).where(
        SubscriptionMember.user_id == actor_id,
        SubscriptionMember.status == "accepted",
    )


def row_clause(model: type[SQLModel], action: Action, actor_id: uuid.UUID) -> ColumnElement:
    """The predicate a row must satisfy for ``actor_id`` to ``action`` it."""
    if model is User:
        if action == "select":
            return true() if get_settings().users_directory_public else User.user_id == actor_id
        if action == "update":
            return User.user_id == actor_id
        return false()

    if model is Subscription:
        if action == "select":
            return or_(
                Subscription.admin_id == actor_id,
                Subscription.subscription_id.in_(_accepted_subscription_ids(actor_id)),
            )
        return Subscription.admin_id == actor_id

    if model is SubscriptionMember:
        return or_(
            SubscriptionMember.user_id == actor_id,
            SubscriptionMember.subscription_id.in_(_admin_subscription_ids(actor_id)),
        )

    if model is Notification:
        if action == "delete":
            return or_(
                Notification.user_id == actor_id,
                Notification.subscription_id.in_(_admin_subscription_ids(actor_id)),
            )
        return Notification.user_id == actor_id

    return false()


async def can_insert(
    session: AsyncSession, model: type[SQLModel], row: SQLModel, actor_id: uuid.UUID
) -> bool:
    """WITH CHECK half of the insert policies."""
    if model is User:
        return row.user_id == actor_id
    if model is Subscription:
        return row.admin_id == actor_id
    if model is SubscriptionMember:
        result = await session.execute(
            select(
                exists().where(
                    and_(
                        Subscription.subscription_id == row.subscription_id,
                        Subscription.admin_id == actor_id,
                    )
                )
            )
        )
        return bool(result.scalar())
    if model is Notification:
        return True
    return False


def realtime_visible(table: str, row: dict, actor_id: uuid.UUID) -> bool:
    """Read policy for rows delivered on the realtime stream.

    Only tables whose rows carry their reader's id can be streamed, since the
    check runs on the change payload without a database round trip.
    """
    owner = row.get("user_id")
    if table in ("notifications", "subscription_members"):
        return owner is not None and str(owner) == str(actor_id)
    return False
