"""
Invitation lifecycle: resolve an invitee, validate, create a pending
membership and notify the invitee.

Flow of ``invite``:
    1. resolve the subscription (must exist and be shared)
    2. resolve the identifier to exactly one user
       (exact username -> case-insensitive username -> server-side lookup)
    3. refuse the admin and any user that already has a membership row
    4. enforce max_members (the admin holds one seat)
    5. create the pending row and queue the invite notification in one
       server transaction (``invite_subscription_member``); a duplicate-key
       rejection means a concurrent invite won the race
    6. without that procedure: insert the row, then send the notification
       (best effort)
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from klypp_shared.schemas.common import NotificationType
from klypp_shared.schemas.memberships import MemberInfo, MembershipRow, UserRow
from klypp_shared.schemas.subscriptions import SubscriptionRow

from .errors import (
    AlreadyMember,
    AmbiguousIdentifier,
    DuplicateKey,
    KlyppError,
    MemberLimitReached,
    NotFound,
    NotShared,
    PermissionDenied,
    ProcedureUnavailable,
    StoreError,
)
from .memberships import MembershipStore
from .notifications import NotificationDispatcher, invite_message, removal_message
from .result import Result
from .store.base import Filter, RelationalStore, eq
from .subscriptions import SubscriptionStore

log = structlog.get_logger()

USERS_TABLE = "users"
RESOLVE_PROCEDURE = "resolve_user_by_username"
MEMBERS_PROCEDURE = "get_subscription_members"
INVITE_PROCEDURE = "invite_subscription_member"
MEMBER_LIMIT_CODE = "KL003"


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so the identifier only matches itself."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class InvitationManager:
    def __init__(
        self,
        store: RelationalStore,
        memberships: Optional[MembershipStore] = None,
        notifications: Optional[NotificationDispatcher] = None,
        subscriptions: Optional[SubscriptionStore] = None,
    ):
        self._store = store
        self._memberships = memberships or MembershipStore(store)
        self._notifications = notifications or NotificationDispatcher(store)
        self._subscriptions = subscriptions or SubscriptionStore(store, self._memberships)

    # ------------------------------------------------------------------
    # Invitee resolution
    # ------------------------------------------------------------------

    async def _lookup(self, filters: list[Filter]) -> list[dict[str, Any]]:
        """Directory lookup where a closed directory reads as no match."""
        try:
            return await self._store.select(USERS_TABLE, filters, columns="user_id,username,name")
        except PermissionDenied:
            log.info("invite.directory_closed")
            return []

    async def resolve_invitee(self, identifier: str) -> UserRow:
        """Resolve ``identifier`` to exactly one user. Raises NotFound/AmbiguousIdentifier."""
        name = identifier.strip()
        if not name:
            raise NotFound("Enter a username to invite", identifier=identifier)

        matches = await self._lookup([eq("username", name)])
        step = "exact"
        if not matches:
            matches = await self._lookup([Filter("username", "ilike", escape_like(name))])
            step = "case_insensitive"
        if not matches:
            step = "procedure"
            try:
                matches = await self._store.rpc(RESOLVE_PROCEDURE, {"p_username": name}) or []
            except ProcedureUnavailable:
                matches = []

        if len(matches) > 1:
            raise AmbiguousIdentifier(
                f'More than one user matches "{name}"', identifier=name, step=step, matches=len(matches)
            )
        if not matches:
            raise NotFound(f'No user named "{name}"', identifier=name, step=step)
        return UserRow.model_validate(matches[0])

    # ------------------------------------------------------------------
    # Invite
    # ------------------------------------------------------------------

    async def _load_shared_subscription(self, subscription_id: uuid.UUID) -> SubscriptionRow:
        subscription = await self._subscriptions.load(subscription_id)
        if subscription is None:
            raise NotFound("Subscription not found", subscription_id=subscription_id)
        if not subscription.is_shared:
            raise NotShared(subscription_id=subscription_id)
        return subscription

    async def _check_member_limit(self, subscription: SubscriptionRow) -> None:
        if subscription.max_members is None:
            return
        holders = await self._memberships.count_seat_holders(subscription.subscription_id)
        if subscription.seats_used(holders) >= subscription.max_members:
            raise MemberLimitReached(
                f"{subscription.name} already has {subscription.max_members} members",
                subscription_id=subscription.subscription_id,
                max_members=subscription.max_members,
                seats_used=subscription.seats_used(holders),
            )

    async def invite(
        self,
        subscription_id: uuid.UUID,
        invitee_identifier: str,
        actor_id: uuid.UUID,
    ) -> Result[MembershipRow]:
        log.info(
            "invite.started",
            subscription_id=str(subscription_id),
            identifier=invitee_identifier,
            actor_id=str(actor_id),
        )
        try:
            subscription = await self._load_shared_subscription(subscription_id)
            invitee = await self.resolve_invitee(invitee_identifier)

            if invitee.user_id == subscription.admin_id:
                raise AlreadyMember(
                    "The subscription admin is already a member",
                    subscription_id=subscription_id,
                    user_id=invitee.user_id,
                )
            existing = await self._memberships.get(subscription_id, invitee.user_id)
            if existing is not None:
                raise AlreadyMember(
                    subscription_id=subscription_id,
                    user_id=invitee.user_id,
                    status=existing.status.value,
                )
            await self._check_member_limit(subscription)

            try:
                membership = await self._invite_via_procedure(subscription, invitee)
                queued = membership is not None
                if membership is None:
                    membership = await self._memberships.create_pending(subscription_id, invitee.user_id)
            except DuplicateKey as exc:
                raise AlreadyMember(
                    subscription_id=subscription_id, user_id=invitee.user_id, step="insert"
                ) from exc
        except KlyppError as exc:
            log.warning(
                "invite.failed",
                subscription_id=str(subscription_id),
                identifier=invitee_identifier,
                error=exc.code,
                message=exc.message,
            )
            return Result.failure(exc)

        if not queued:
            try:
                await self._notifications.send(
                    invitee.user_id,
                    subscription_id,
                    invite_message(subscription.name),
                    NotificationType.INVITE,
                )
            except StoreError as exc:
                log.warning(
                    "invite.notification_failed",
                    subscription_id=str(subscription_id),
                    user_id=str(invitee.user_id),
                    error=exc.message,
                )

        log.info(
            "invite.created",
            subscription_id=str(subscription_id),
            user_id=str(invitee.user_id),
            atomic=queued,
        )
        return Result.success(membership)

    async def _invite_via_procedure(
        self, subscription: SubscriptionRow, invitee: UserRow
    ) -> Optional[MembershipRow]:
        """Pending row and invite notification in one server transaction.

        Returns None when the procedure is not installed.
        """
        try:
            row = await self._store.rpc(
                INVITE_PROCEDURE,
                {
                    "p_subscription_id": subscription.subscription_id,
                    "p_user_id": invitee.user_id,
                    "p_message": invite_message(subscription.name),
                },
            )
        except ProcedureUnavailable:
            return None
        except StoreError as exc:
            if exc.context.get("db_code") == MEMBER_LIMIT_CODE:
                raise MemberLimitReached(
                    exc.message,
                    subscription_id=subscription.subscription_id,
                    max_members=subscription.max_members,
                ) from exc
            raise
        return MembershipRow.model_validate(row)

    # ------------------------------------------------------------------
    # Member listing and removal
    # ------------------------------------------------------------------

    async def list_members(self, subscription_id: uuid.UUID) -> Result[list[MemberInfo]]:
        try:
            try:
                data = await self._store.rpc(MEMBERS_PROCEDURE, {"p_subscription_id": subscription_id})
            except ProcedureUnavailable:
                data = None

            if isinstance(data, dict) and data.get("success"):
                members = [
                    MemberInfo(
                        user_id=item["user_id"],
                        status=item["status"],
                        joined_at=item.get("joined_at"),
                        username=(item.get("users") or {}).get("username"),
                        name=(item.get("users") or {}).get("name"),
                    )
                    for item in data.get("data") or []
                ]
                return Result.success(members)
            if isinstance(data, dict):
                return Result.failure(
                    PermissionDenied(data.get("error") or "Cannot list members", subscription_id=subscription_id)
                )

            rows = await self._memberships.list_for_subscription(subscription_id)
        except StoreError as exc:
            log.warning("members.list_failed", subscription_id=str(subscription_id), error=exc.message)
            return Result.failure(exc)

        return Result.success(
            [MemberInfo(user_id=m.user_id, status=m.status, joined_at=m.joined_at) for m in rows]
        )

    async def remove_member(
        self, subscription_id: uuid.UUID, user_id: uuid.UUID, actor_id: uuid.UUID
    ) -> Result[None]:
        """Admin-only removal of a member or pending invitee."""
        try:
            subscription = await self._subscriptions.load(subscription_id)
            if subscription is None:
                raise NotFound("Subscription not found", subscription_id=subscription_id)
            if subscription.admin_id != actor_id:
                raise PermissionDenied(
                    "Only the subscription admin can remove members",
                    subscription_id=subscription_id,
                    actor_id=actor_id,
                )
            removed = await self._memberships.delete(subscription_id, user_id)
            if not removed:
                raise NotFound("Membership not found", subscription_id=subscription_id, user_id=user_id)
        except KlyppError as exc:
            log.warning(
                "members.remove_failed",
                subscription_id=str(subscription_id),
                user_id=str(user_id),
                error=exc.code,
            )
            return Result.failure(exc)

        try:
            await self._notifications.send(
                user_id, subscription_id, removal_message(subscription.name), NotificationType.INFO
            )
        except StoreError as exc:
            log.warning("members.removal_notice_failed", user_id=str(user_id), error=exc.message)

        log.info("members.removed", subscription_id=str(subscription_id), user_id=str(user_id))
        return Result.success(None)
