"""
Subscription entity store with the caller's in-memory list.

``fetch`` loads the subscriptions the actor administers plus those they are
an accepted member of. The cascade coordinator drops deleted subscriptions
from the list through ``remove_local``.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from klypp_shared.schemas.common import MembershipStatus
from klypp_shared.schemas.subscriptions import (
    SubscriptionCreate,
    SubscriptionRow,
    SubscriptionUpdate,
)

from .errors import KlyppError, NotFound, StillShared, StoreError
from .memberships import MembershipStore
from .result import Result
from .store.base import Filter, RelationalStore, eq

log = structlog.get_logger()

TABLE = "subscriptions"
STILL_SHARED_CODE = "KL004"


class SubscriptionStore:
    def __init__(self, store: RelationalStore, memberships: Optional[MembershipStore] = None):
        self._store = store
        self._memberships = memberships or MembershipStore(store)
        self._items: dict[uuid.UUID, SubscriptionRow] = {}

    @property
    def subscriptions(self) -> list[SubscriptionRow]:
        return sorted(self._items.values(), key=lambda s: s.next_renewal_date)

    def get(self, subscription_id: uuid.UUID) -> Optional[SubscriptionRow]:
        return self._items.get(subscription_id)

    def remove_local(self, subscription_id: uuid.UUID) -> bool:
        return self._items.pop(subscription_id, None) is not None

    async def load(self, subscription_id: uuid.UUID) -> Optional[SubscriptionRow]:
        """Read one subscription from the store, bypassing the local list."""
        rows = await self._store.select(TABLE, [eq("subscription_id", subscription_id)])
        return SubscriptionRow.model_validate(rows[0]) if rows else None

    async def fetch(self, actor_id: uuid.UUID) -> Result[list[SubscriptionRow]]:
        try:
            owned = await self._store.select(TABLE, [eq("admin_id", actor_id)])
            joined = await self._memberships.list_for_user(actor_id, MembershipStatus.ACCEPTED)
            shared: list[dict[str, Any]] = []
            if joined:
                shared = await self._store.select(
                    TABLE, [Filter("subscription_id", "in", [m.subscription_id for m in joined])]
                )
        except StoreError as exc:
            log.warning("subscriptions.fetch_failed", actor_id=str(actor_id), error=exc.message)
            return Result.failure(exc)

        self._items = {}
        for row in [*owned, *shared]:
            sub = SubscriptionRow.model_validate(row)
            self._items[sub.subscription_id] = sub
        log.info("subscriptions.fetched", actor_id=str(actor_id), count=len(self._items))
        return Result.success(self.subscriptions)

    async def add(self, data: SubscriptionCreate, actor_id: uuid.UUID) -> Result[SubscriptionRow]:
        payload = {**data.model_dump(mode="json"), "admin_id": str(actor_id)}
        try:
            rows = await self._store.insert(TABLE, payload)
        except StoreError as exc:
            log.warning("subscriptions.add_failed", actor_id=str(actor_id), error=exc.message)
            return Result.failure(exc)
        sub = SubscriptionRow.model_validate(rows[0])
        self._items[sub.subscription_id] = sub
        return Result.success(sub)

    async def update(
        self, subscription_id: uuid.UUID, changes: dict[str, Any]
    ) -> Result[SubscriptionRow]:
        """Apply a partial update. ``admin_id`` and unknown fields are refused.

        Turning ``is_shared`` off is refused with ``StillShared`` while any
        membership row remains; remove the members first.
        """
        try:
            patch = SubscriptionUpdate.model_validate(changes)
        except ValidationError as exc:
            return Result.failure(KlyppError(str(exc), subscription_id=subscription_id))

        values = patch.model_dump(mode="json", exclude_unset=True)
        if not values:
            current = self.get(subscription_id)
            return Result.success(current) if current else Result.failure(
                NotFound("Subscription not found", subscription_id=subscription_id)
            )
        try:
            if values.get("is_shared") is False:
                members = await self._memberships.list_for_subscription(subscription_id)
                if members:
                    raise StillShared(subscription_id=subscription_id, members=len(members))
            rows = await self._store.update(TABLE, values, [eq("subscription_id", subscription_id)])
        except StoreError as exc:
            log.warning(
                "subscriptions.update_failed", subscription_id=str(subscription_id), error=exc.message
            )
            if exc.context.get("db_code") == STILL_SHARED_CODE:
                return Result.failure(StillShared(subscription_id=subscription_id))
            return Result.failure(exc)
        except StillShared as exc:
            log.info("subscriptions.unshare_refused", subscription_id=str(subscription_id))
            return Result.failure(exc)
        if not rows:
            return Result.failure(NotFound("Subscription not found", subscription_id=subscription_id))
        sub = SubscriptionRow.model_validate(rows[0])
        self._items[sub.subscription_id] = sub
        return Result.success(sub)
