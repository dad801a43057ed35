"""
Server-side procedures, reachable at ``/rest/v1/rpc/{name}``.

Procedures run with definer rights: they bypass the row policies and perform
their own authorization. Each call runs in the request's single transaction,
so a procedure either applies all of its writes or none of them. Notifications
a procedure sends go through the outbox of that same transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import get_settings
from app.core.errors import (
    FOREIGN_KEY_VIOLATION,
    MEMBER_LIMIT_REACHED,
    NOT_NULL_VIOLATION,
    UNDEFINED_FUNCTION,
    UNIQUE_VIOLATION,
    INVALID_TEXT_REPRESENTATION,
    permission_denied,
    store_error,
)
from app.core.realtime import make_change
from app.models import Notification, NotificationOutbox, Subscription, SubscriptionMember, User
from app.services import outbox
from app.services.rest import row_to_dict
from klypp_shared.schemas.common import (
    ChangeType,
    MembershipStatus,
    NotificationStatus,
    NotificationType,
)
from klypp_shared.schemas.notifications import ChangeEvent

log = structlog.get_logger()


@dataclass
class ProcedureContext:
    session: AsyncSession
    actor_id: uuid.UUID
    changes: list[ChangeEvent] = field(default_factory=list)
    outbox: list[NotificationOutbox] = field(default_factory=list)

    def notify(
        self,
        recipient_id: uuid.UUID,
        subscription_id: uuid.UUID | None,
        message: str,
        type: NotificationType,
    ) -> None:
        """Queue a notification in this call's transaction."""
        self.outbox.append(outbox.enqueue(self.session, recipient_id, subscription_id, message, type))


Procedure = Callable[[ProcedureContext, dict[str, Any]], Awaitable[Any]]

PROCEDURES: dict[str, Procedure] = {}


def procedure(name: str):
    def register(fn: Procedure) -> Procedure:
        PROCEDURES[name] = fn
        return fn
    return register


def get_procedure(name: str) -> Procedure:
    if name not in PROCEDURES or name in get_settings().disabled_procedures:
        raise store_error(
            404,
            UNDEFINED_FUNCTION,
            f"Could not find the function public.{name} in the schema cache",
        )
    return PROCEDURES[name]


async def call_procedure(
    session: AsyncSession, name: str, args: dict[str, Any], actor_id: uuid.UUID
) -> tuple[Any, ProcedureContext]:
    """Run a procedure. The context carries the changes and outbox events it produced."""
    fn = get_procedure(name)
    ctx = ProcedureContext(session=session, actor_id=actor_id)
    log.info("rpc.call", procedure=name, actor_id=str(actor_id))
    result = await fn(ctx, args)
    await session.flush()
    return result, ctx


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _arg(args: dict[str, Any], name: str, *, required: bool = True) -> Any:
    value = args.get(name)
    if value is None and required:
        raise store_error(400, NOT_NULL_VIOLATION, f"missing argument {name}")
    return value


def _uuid_arg(args: dict[str, Any], name: str, *, required: bool = True) -> uuid.UUID | None:
    value = _arg(args, name, required=required)
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise store_error(400, INVALID_TEXT_REPRESENTATION, f"invalid uuid for {name}: {value!r}")


async def _mark_invites_read(
    ctx: ProcedureContext, user_id: uuid.UUID, subscription_id: uuid.UUID
) -> int:
    result = await ctx.session.execute(
        select(Notification).where(
            Notification.user_id == user_id,
            Notification.subscription_id == subscription_id,
            Notification.type == NotificationType.INVITE.value,
            Notification.status == NotificationStatus.UNREAD.value,
        )
    )
    marked = 0
    for note in result.scalars().all():
        old = row_to_dict(note)
        note.status = NotificationStatus.READ.value
        ctx.session.add(note)
        ctx.changes.append(
            make_change(ChangeType.UPDATE, "notifications", record=row_to_dict(note), old_record=old)
        )
        marked += 1
    return marked


async def _pending_membership(
    ctx: ProcedureContext, args: dict[str, Any]
) -> tuple[SubscriptionMember | None, uuid.UUID, uuid.UUID]:
    subscription_id = _uuid_arg(args, "p_subscription_id")
    user_id = _uuid_arg(args, "p_user_id")
    if user_id != ctx.actor_id:
        raise permission_denied("subscription_members", "update")
    member = await ctx.session.get(SubscriptionMember, (subscription_id, user_id))
    if member is None or member.status != MembershipStatus.PENDING.value:
        return None, subscription_id, user_id
    return member, subscription_id, user_id


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------


@procedure("create_notification")
async def create_notification(ctx: ProcedureContext, args: dict[str, Any]) -> str:
    """Insert a notification for any recipient. Returns the new id."""
    kind = str(_arg(args, "p_type", required=False) or NotificationType.INFO.value)
    try:
        NotificationType(kind)
    except ValueError:
        raise store_error(400, INVALID_TEXT_REPRESENTATION, f"unknown notification type {kind!r}")

    note = Notification(
        user_id=_uuid_arg(args, "p_user_id"),
        subscription_id=_uuid_arg(args, "p_subscription_id", required=False),
        message=str(_arg(args, "p_message")),
        type=kind,
    )
    ctx.session.add(note)
    await ctx.session.flush()
    ctx.changes.append(make_change(ChangeType.INSERT, "notifications", record=row_to_dict(note)))
    return str(note.notification_id)


@procedure("invite_subscription_member")
async def invite_subscription_member(ctx: ProcedureContext, args: dict[str, Any]) -> dict[str, Any]:
    """Create a pending membership and queue the invite notification with it.

    Only the subscription admin may invite. The admin and users who already
    have a row answer 23505, a full subscription answers KL003.
    """
    subscription_id = _uuid_arg(args, "p_subscription_id")
    user_id = _uuid_arg(args, "p_user_id")
    subscription = await ctx.session.get(Subscription, subscription_id)
    if subscription is None or subscription.admin_id != ctx.actor_id:
        raise permission_denied("subscription_members", "insert")
    if await ctx.session.get(User, user_id) is None:
        raise store_error(409, FOREIGN_KEY_VIOLATION, f"user {user_id} does not exist")
    if (
        user_id == subscription.admin_id
        or await ctx.session.get(SubscriptionMember, (subscription_id, user_id)) is not None
    ):
        raise store_error(
            409, UNIQUE_VIOLATION, "duplicate key value violates unique constraint on subscription_members"
        )

    if subscription.max_members is not None:
        holders = await ctx.session.scalar(
            select(func.count())
            .select_from(SubscriptionMember)
            .where(
                SubscriptionMember.subscription_id == subscription_id,
                SubscriptionMember.status.in_(
                    [MembershipStatus.PENDING.value, MembershipStatus.ACCEPTED.value]
                ),
            )
        )
        # The admin holds a seat without a membership row.
        if holders + 1 >= subscription.max_members:
            raise store_error(
                400, MEMBER_LIMIT_REACHED, f"{subscription.name} already has {subscription.max_members} members"
            )

    member = SubscriptionMember(
        subscription_id=subscription_id, user_id=user_id, status=MembershipStatus.PENDING.value
    )
    ctx.session.add(member)
    await ctx.session.flush()
    ctx.changes.append(make_change(ChangeType.INSERT, "subscription_members", record=row_to_dict(member)))

    message = _arg(args, "p_message", required=False) or (
        f"You have been invited to join the {subscription.name} subscription"
    )
    ctx.notify(user_id, subscription_id, str(message), NotificationType.INVITE)
    log.info("rpc.member_invited", subscription_id=str(subscription_id), user_id=str(user_id))
    return row_to_dict(member)


@procedure("accept_subscription_invitation")
async def accept_subscription_invitation(ctx: ProcedureContext, args: dict[str, Any]) -> bool:
    member, subscription_id, user_id = await _pending_membership(ctx, args)
    if member is None:
        return False
    old = row_to_dict(member)
    member.status = MembershipStatus.ACCEPTED.value
    member.joined_at = datetime.now(timezone.utc)
    ctx.session.add(member)
    ctx.changes.append(
        make_change(ChangeType.UPDATE, "subscription_members", record=row_to_dict(member), old_record=old)
    )
    await _mark_invites_read(ctx, user_id, subscription_id)
    return True


@procedure("reject_subscription_invitation")
async def reject_subscription_invitation(ctx: ProcedureContext, args: dict[str, Any]) -> bool:
    """Rejecting removes the pending row, so the user can be invited again."""
    member, subscription_id, user_id = await _pending_membership(ctx, args)
    if member is None:
        return False
    old = row_to_dict(member)
    await ctx.session.delete(member)
    ctx.changes.append(make_change(ChangeType.DELETE, "subscription_members", old_record=old))
    await _mark_invites_read(ctx, user_id, subscription_id)
    return True


@procedure("get_subscription_members")
async def get_subscription_members(ctx: ProcedureContext, args: dict[str, Any]) -> dict[str, Any]:
    subscription_id = _uuid_arg(args, "p_subscription_id")
    subscription = await ctx.session.get(Subscription, subscription_id)
    if subscription is None:
        return {"success": False, "error": "Subscription not found"}

    rows = await ctx.session.execute(
        select(SubscriptionMember, User)
        .join(User, User.user_id == SubscriptionMember.user_id)
        .where(SubscriptionMember.subscription_id == subscription_id)
    )
    pairs = rows.all()
    visible = subscription.admin_id == ctx.actor_id or any(
        member.user_id == ctx.actor_id and member.status == MembershipStatus.ACCEPTED.value
        for member, _ in pairs
    )
    if not visible:
        return {"success": False, "error": "Not a member of this subscription"}

    data = [
        {
            "user_id": str(member.user_id),
            "status": member.status,
            "joined_at": member.joined_at.isoformat() if member.joined_at else None,
            "users": {"username": user.username, "name": user.name},
        }
        for member, user in pairs
    ]
    return {"success": True, "data": data}


@procedure("resolve_user_by_username")
async def resolve_user_by_username(ctx: ProcedureContext, args: dict[str, Any]) -> list[dict[str, Any]]:
    """Case-insensitive exact username lookup that ignores directory visibility."""
    username = str(_arg(args, "p_username")).strip()
    if not username:
        return []
    result = await ctx.session.execute(
        select(User).where(func.lower(User.username) == username.lower())
    )
    return [
        {"user_id": str(user.user_id), "username": user.username, "name": user.name}
        for user in result.scalars().all()
    ]


@procedure("delete_subscription_with_related")
async def delete_subscription_with_related(ctx: ProcedureContext, args: dict[str, Any]) -> dict[str, Any]:
    """Atomically delete a subscription with its memberships and notifications."""
    subscription_id = _uuid_arg(args, "p_subscription_id")
    subscription = await ctx.session.get(Subscription, subscription_id)
    if subscription is None:
        return {"success": False, "error": "Subscription not found"}
    if subscription.admin_id != ctx.actor_id:
        raise permission_denied("subscriptions", "delete")

    await ctx.session.execute(
        delete(NotificationOutbox).where(
            NotificationOutbox.subscription_id == subscription_id,
            NotificationOutbox.state == outbox.PENDING,
        )
    )

    counts = {}
    for model, table in (
        (Notification, "notifications"),
        (SubscriptionMember, "subscription_members"),
    ):
        result = await ctx.session.execute(
            select(model).where(model.subscription_id == subscription_id)
        )
        victims = list(result.scalars().all())
        for obj in victims:
            ctx.changes.append(make_change(ChangeType.DELETE, table, old_record=row_to_dict(obj)))
            await ctx.session.delete(obj)
        counts[table] = len(victims)
        # Children must be gone before the parent row is deleted.
        await ctx.session.flush()

    ctx.changes.append(
        make_change(ChangeType.DELETE, "subscriptions", old_record=row_to_dict(subscription))
    )
    await ctx.session.delete(subscription)

    log.info(
        "rpc.subscription_deleted",
        subscription_id=str(subscription_id),
        memberships=counts["subscription_members"],
        notifications=counts["notifications"],
    )
    return {"success": True, "deleted": counts}
