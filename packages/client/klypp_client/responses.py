"""
Membership response handler: an invitee accepts or rejects, or a member leaves.

An answer goes through the server procedure when it exists, which also marks
the invite notifications read in the same transaction. Otherwise the row is
updated directly and the notifications are marked read afterwards, best effort.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog

from klypp_shared.schemas.common import MembershipDecision, MembershipStatus

from .errors import InvalidTransition, KlyppError, NotFound, PermissionDenied, StoreError
from .memberships import MembershipStore
from .notifications import NotificationDispatcher
from .result import Result
from .subscriptions import SubscriptionStore

log = structlog.get_logger()


class MembershipResponseHandler:
    def __init__(
        self,
        memberships: MembershipStore,
        notifications: NotificationDispatcher,
        subscriptions: Optional[SubscriptionStore] = None,
    ):
        self._memberships = memberships
        self._notifications = notifications
        self._subscriptions = subscriptions

    async def _current_status(
        self, subscription_id: uuid.UUID, user_id: uuid.UUID
    ) -> MembershipStatus:
        row = await self._memberships.get(subscription_id, user_id)
        if row is None:
            raise NotFound("Invitation not found", subscription_id=subscription_id, user_id=user_id)
        return row.status

    async def _accept(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Returns True when the server marked the invites read in the same transaction."""
        answered = await self._memberships.answer_invitation(
            subscription_id, user_id, MembershipStatus.ACCEPTED
        )
        if answered:
            return True
        if answered is None and await self._memberships.transition(
            subscription_id, user_id, MembershipStatus.PENDING, MembershipStatus.ACCEPTED
        ):
            return False
        status = await self._current_status(subscription_id, user_id)
        if status is MembershipStatus.ACCEPTED:
            log.info("respond.already_accepted", subscription_id=str(subscription_id), user_id=str(user_id))
            return False
        raise InvalidTransition(
            f"Cannot accept an invitation that is {status.value}",
            subscription_id=subscription_id,
            user_id=user_id,
            status=status.value,
        )

    async def _reject(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        answered = await self._memberships.answer_invitation(
            subscription_id, user_id, MembershipStatus.REJECTED
        )
        if answered:
            return True
        if answered is None and await self._memberships.delete(
            subscription_id, user_id, status=MembershipStatus.PENDING
        ):
            return False
        status = await self._current_status(subscription_id, user_id)
        raise InvalidTransition(
            f"Cannot reject an invitation that is {status.value}",
            subscription_id=subscription_id,
            user_id=user_id,
            status=status.value,
        )

    async def respond(
        self,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        decision: MembershipDecision,
    ) -> Result[None]:
        try:
            decision = MembershipDecision(decision)
        except ValueError:
            return Result.failure(
                InvalidTransition(f"Unknown decision {decision!r}", subscription_id=subscription_id)
            )
        try:
            if decision is MembershipDecision.ACCEPTED:
                read_by_server = await self._accept(subscription_id, user_id)
            else:
                read_by_server = await self._reject(subscription_id, user_id)
        except KlyppError as exc:
            log.warning(
                "respond.failed",
                subscription_id=str(subscription_id),
                user_id=str(user_id),
                decision=decision.value,
                error=exc.code,
                message=exc.message,
            )
            return Result.failure(exc)

        if not read_by_server:
            try:
                marked = await self._notifications.mark_invite_read(user_id, subscription_id)
            except StoreError as exc:
                log.warning(
                    "respond.mark_read_failed",
                    subscription_id=str(subscription_id),
                    user_id=str(user_id),
                    error=exc.message,
                )
            else:
                log.debug("respond.invites_marked_read", count=marked)

        log.info(
            "respond.completed",
            subscription_id=str(subscription_id),
            user_id=str(user_id),
            decision=decision.value,
        )
        return Result.success(None)

    async def leave(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> Result[None]:
        """An accepted member leaves. The admin cannot leave their own subscription."""
        try:
            if self._subscriptions is not None:
                subscription = await self._subscriptions.load(subscription_id)
                if subscription is not None and subscription.admin_id == user_id:
                    raise PermissionDenied(
                        "The admin cannot leave; delete the subscription instead",
                        subscription_id=subscription_id,
                        user_id=user_id,
                    )
            updated = await self._memberships.transition(
                subscription_id, user_id, MembershipStatus.ACCEPTED, MembershipStatus.LEFT
            )
            if not updated:
                status = await self._current_status(subscription_id, user_id)
                raise InvalidTransition(
                    f"Cannot leave a membership that is {status.value}",
                    subscription_id=subscription_id,
                    user_id=user_id,
                    status=status.value,
                )
        except KlyppError as exc:
            log.warning(
                "leave.failed", subscription_id=str(subscription_id), user_id=str(user_id), error=exc.code
            )
            return Result.failure(exc)

        if self._subscriptions is not None:
            self._subscriptions.remove_local(subscription_id)
        log.info("leave.completed", subscription_id=str(subscription_id), user_id=str(user_id))
        return Result.success(None)
