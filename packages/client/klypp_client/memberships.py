"""
Membership state store: the canonical (subscription, user) -> status rows.

Thin typed access to the ``subscription_members`` table. Status writes go
through ``check_transition`` and are conditional on the current status, so a
row is never moved along an edge outside the transition table.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

import structlog

from klypp_shared.schemas.common import (
    SEAT_HOLDING_STATUSES,
    MembershipStatus,
    check_transition,
)
from klypp_shared.schemas.memberships import MembershipRow

from .errors import InvalidTransition, ProcedureUnavailable
from .store.base import Filter, FilterLike, Match, RelationalStore, eq

log = structlog.get_logger()

TABLE = "subscription_members"

# Server procedures that answer an invitation and mark its notifications read
# in one transaction.
ANSWER_PROCEDURES = {
    MembershipStatus.ACCEPTED: "accept_subscription_invitation",
    MembershipStatus.REJECTED: "reject_subscription_invitation",
}

Formulation = Literal["match", "eq"]


def _key_filters(
    subscription_id: uuid.UUID,
    user_id: uuid.UUID,
    formulation: Formulation = "eq",
    **extra: Any,
) -> list[FilterLike]:
    columns = {"subscription_id": subscription_id, "user_id": user_id, **extra}
    if formulation == "match":
        return [Match(columns)]
    return [eq(column, value) for column, value in columns.items()]


class MembershipStore:
    def __init__(self, store: RelationalStore):
        self._store = store

    async def get(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> Optional[MembershipRow]:
        rows = await self._store.select(TABLE, _key_filters(subscription_id, user_id))
        return MembershipRow.model_validate(rows[0]) if rows else None

    async def list_for_subscription(
        self,
        subscription_id: uuid.UUID,
        statuses: Optional[tuple[MembershipStatus, ...]] = None,
    ) -> list[MembershipRow]:
        filters: list[FilterLike] = [eq("subscription_id", subscription_id)]
        if statuses:
            filters.append(Filter("status", "in", [s.value for s in statuses]))
        rows = await self._store.select(TABLE, filters)
        return [MembershipRow.model_validate(row) for row in rows]

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        status: Optional[MembershipStatus] = None,
    ) -> list[MembershipRow]:
        filters: list[FilterLike] = [eq("user_id", user_id)]
        if status is not None:
            filters.append(eq("status", status.value))
        rows = await self._store.select(TABLE, filters)
        return [MembershipRow.model_validate(row) for row in rows]

    async def count_seat_holders(self, subscription_id: uuid.UUID) -> int:
        """Rows occupying a seat (pending or accepted). The admin is not included."""
        return len(await self.list_for_subscription(subscription_id, SEAT_HOLDING_STATUSES))

    async def create_pending(self, subscription_id: uuid.UUID, user_id: uuid.UUID) -> MembershipRow:
        rows = await self._store.insert(
            TABLE,
            {
                "subscription_id": subscription_id,
                "user_id": user_id,
                "status": MembershipStatus.PENDING.value,
                "joined_at": None,
            },
        )
        if rows:
            return MembershipRow.model_validate(rows[0])
        return MembershipRow(
            subscription_id=subscription_id, user_id=user_id, status=MembershipStatus.PENDING
        )

    async def transition(
        self,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        current: MembershipStatus,
        target: MembershipStatus,
    ) -> list[MembershipRow]:
        """Move the row from ``current`` to ``target`` if it is still ``current``.

        Returns the updated rows; an empty list means the row was not in
        ``current`` (or does not exist) when the update ran.
        """
        try:
            check_transition(current, target)
        except ValueError as exc:
            raise InvalidTransition(
                str(exc), subscription_id=subscription_id, user_id=user_id
            ) from exc

        values: dict[str, Any] = {"status": target.value}
        if target is MembershipStatus.ACCEPTED:
            values["joined_at"] = datetime.now(timezone.utc)
        rows = await self._store.update(
            TABLE, values, _key_filters(subscription_id, user_id, status=current.value)
        )
        return [MembershipRow.model_validate(row) for row in rows]

    async def delete(
        self,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        formulation: Formulation = "eq",
        status: Optional[MembershipStatus] = None,
    ) -> list[dict[str, Any]]:
        """Delete one row, optionally only while it is in ``status``."""
        extra = {"status": status.value} if status is not None else {}
        return await self._store.delete(
            TABLE, _key_filters(subscription_id, user_id, formulation, **extra)
        )

    async def answer_invitation(
        self,
        subscription_id: uuid.UUID,
        user_id: uuid.UUID,
        target: MembershipStatus,
    ) -> Optional[bool]:
        """Accept or reject a pending row server-side.

        Returns whether the row was still pending, or None when the server
        does not offer the procedure.
        """
        try:
            check_transition(MembershipStatus.PENDING, target)
        except ValueError as exc:
            raise InvalidTransition(
                str(exc), subscription_id=subscription_id, user_id=user_id
            ) from exc
        try:
            answered = await self._store.rpc(
                ANSWER_PROCEDURES[target],
                {"p_subscription_id": subscription_id, "p_user_id": user_id},
            )
        except ProcedureUnavailable:
            return None
        return bool(answered)
