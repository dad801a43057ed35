"""
Cascading delete of a subscription with its memberships and notifications.

The backend offers no cross-table transaction to the client, so the delete is
attempted first as one server-side procedure and, when that is unavailable or
fails, as a sequence of single-table deletes:

    notifications (best effort, residue tolerated)
      -> each membership row (grouped match, then chained eq)
      -> re-query memberships; any survivor aborts with the subscription intact
      -> the subscription row

The subscription row is never deleted while membership rows still reference
it. Every remote call is awaited before the next one starts, so the re-query
observes the outcome of every prior attempt.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import structlog

from klypp_shared.schemas.memberships import MembershipRow

from .errors import (
    DeleteFailed,
    IncompleteCascade,
    KlyppError,
    NotFound,
    PermissionDenied,
    ProcedureUnavailable,
    StoreError,
)
from .memberships import MembershipStore
from .notifications import NotificationDispatcher
from .result import Result
from .store.base import RelationalStore, eq
from .subscriptions import SubscriptionStore

log = structlog.get_logger()

DELETE_PROCEDURE = "delete_subscription_with_related"
SUBSCRIPTIONS_TABLE = "subscriptions"


@dataclass
class CascadeReport:
    """What a successful delete did, for logging and the CLI."""
    subscription_id: uuid.UUID
    mode: Literal["procedure", "manual"] = "procedure"
    members_found: Optional[int] = None
    members_deleted: int = 0
    notifications_deleted: Optional[int] = None
    residue: list[str] = field(default_factory=list)


class CascadeDeleteCoordinator:
    def __init__(
        self,
        store: RelationalStore,
        memberships: MembershipStore,
        notifications: NotificationDispatcher,
        subscriptions: SubscriptionStore,
    ):
        self._store = store
        self._memberships = memberships
        self._notifications = notifications
        self._subscriptions = subscriptions

    async def delete_subscription(
        self, subscription_id: uuid.UUID, actor_id: uuid.UUID
    ) -> Result[CascadeReport]:
        bound = log.bind(subscription_id=str(subscription_id), actor_id=str(actor_id))
        report = CascadeReport(subscription_id=subscription_id)
        try:
            await self._authorize(subscription_id, actor_id)

            members = await self._list_members(subscription_id, step="initial_fetch")
            report.members_found = len(members) if members is not None else None

            if await self._try_procedure(subscription_id):
                bound.info("cascade.completed", mode="procedure")
                self._subscriptions.remove_local(subscription_id)
                return Result.success(report)

            report.mode = "manual"
            await self._manual_cascade(subscription_id, members, report)
        except KlyppError as exc:
            bound.warning(
                "cascade.failed",
                error=exc.code,
                message=exc.message,
                retriable=exc.retriable,
                context=exc.to_dict()["context"],
            )
            return Result.failure(exc)

        self._subscriptions.remove_local(subscription_id)
        bound.info(
            "cascade.completed",
            mode=report.mode,
            members_deleted=report.members_deleted,
            notifications_deleted=report.notifications_deleted,
            residue=report.residue or None,
        )
        return Result.success(report)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _authorize(self, subscription_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        subscription = await self._subscriptions.load(subscription_id)
        if subscription is None:
            raise NotFound("Subscription not found", subscription_id=subscription_id, step="load")
        if subscription.admin_id != actor_id:
            raise PermissionDenied(
                "Only the subscription admin can delete it",
                subscription_id=subscription_id,
                actor_id=actor_id,
                step="load",
            )

    async def _list_members(
        self, subscription_id: uuid.UUID, *, step: str
    ) -> Optional[list[MembershipRow]]:
        try:
            return await self._memberships.list_for_subscription(subscription_id)
        except StoreError as exc:
            log.warning(
                "cascade.member_fetch_failed",
                subscription_id=str(subscription_id),
                step=step,
                error=exc.message,
            )
            return None

    async def _try_procedure(self, subscription_id: uuid.UUID) -> bool:
        try:
            outcome: Any = await self._store.rpc(DELETE_PROCEDURE, {"p_subscription_id": subscription_id})
        except ProcedureUnavailable:
            log.info("cascade.procedure_unavailable", subscription_id=str(subscription_id))
            return False
        except StoreError as exc:
            log.warning(
                "cascade.procedure_failed",
                subscription_id=str(subscription_id),
                error=exc.message,
                error_code=exc.code,
            )
            return False

        if outcome is False or (isinstance(outcome, dict) and outcome.get("success") is False):
            log.warning(
                "cascade.procedure_reported_failure",
                subscription_id=str(subscription_id),
                detail=outcome.get("error") if isinstance(outcome, dict) else None,
            )
            return False
        return True

    async def _delete_member(
        self, subscription_id: uuid.UUID, user_id: uuid.UUID
    ) -> tuple[bool, Optional[StoreError]]:
        """Delete one membership row.

        Returns whether a row was deleted, and the last error when both
        attempts failed. ``(False, None)`` means nothing matched.
        """
        last_error: Optional[StoreError] = None
        for formulation in ("match", "eq"):
            try:
                deleted = await self._memberships.delete(
                    subscription_id, user_id, formulation=formulation
                )
            except StoreError as exc:
                last_error = exc
                log.warning(
                    "cascade.member_delete_failed",
                    subscription_id=str(subscription_id),
                    user_id=str(user_id),
                    attempt=formulation,
                    error=exc.message,
                    error_code=exc.code,
                )
                continue
            if deleted:
                return True, None
            # Nothing matched; the alternate formulation gets a turn before
            # the re-query decides.
            last_error = None
        return False, last_error

    async def _manual_cascade(
        self,
        subscription_id: uuid.UUID,
        members: Optional[list[MembershipRow]],
        report: CascadeReport,
    ) -> None:
        try:
            report.notifications_deleted = await self._notifications.delete_for_subscription(
                subscription_id
            )
        except StoreError as exc:
            report.residue.append("notifications")
            log.warning(
                "cascade.notifications_residue",
                subscription_id=str(subscription_id),
                error=exc.message,
            )

        if members is None:
            members = await self._list_members(subscription_id, step="fallback_fetch")
            if members is None:
                raise IncompleteCascade(
                    "Could not list the members to remove, the subscription was kept",
                    subscription_id=subscription_id,
                    step="fallback_fetch",
                )

        failures: dict[uuid.UUID, StoreError] = {}
        for member in members:
            deleted, error = await self._delete_member(subscription_id, member.user_id)
            if error is not None:
                failures[member.user_id] = error
            elif deleted:
                report.members_deleted += 1
            else:
                log.info(
                    "cascade.member_already_gone",
                    subscription_id=str(subscription_id),
                    user_id=str(member.user_id),
                )

        try:
            remaining = await self._memberships.list_for_subscription(subscription_id)
        except StoreError as exc:
            raise IncompleteCascade(
                "Could not confirm that all members were removed, the subscription was kept",
                subscription_id=subscription_id,
                step="requery",
                error=exc.message,
            ) from exc

        if remaining:
            survivors = [str(m.user_id) for m in remaining]
            if failures and all(isinstance(e, PermissionDenied) for e in failures.values()):
                raise PermissionDenied(
                    "You do not have permission to remove the members of this subscription",
                    subscription_id=subscription_id,
                    step="delete_members",
                    remaining=len(survivors),
                )
            raise IncompleteCascade(
                subscription_id=subscription_id,
                step="requery",
                remaining=len(survivors),
                survivors=",".join(survivors),
            )

        await self._delete_subscription_row(subscription_id)

    async def _delete_subscription_row(self, subscription_id: uuid.UUID) -> None:
        try:
            deleted = await self._store.delete(
                SUBSCRIPTIONS_TABLE, [eq("subscription_id", subscription_id)]
            )
        except PermissionDenied:
            raise
        except StoreError as exc:
            raise DeleteFailed(
                subscription_id=subscription_id, step="delete_subscription", error=exc.message
            ) from exc

        if deleted:
            return
        try:
            still_there = await self._subscriptions.load(subscription_id)
        except StoreError as exc:
            raise DeleteFailed(
                subscription_id=subscription_id, step="verify_delete", error=exc.message
            ) from exc
        if still_there is not None:
            raise DeleteFailed(subscription_id=subscription_id, step="delete_subscription")
