"""
Subscription row schemas.

A subscription is the root entity: memberships and notifications reference
it by ``subscription_id`` and must not outlive it.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .common import RenewalFrequency


class SubscriptionRow(BaseModel):
    subscription_id: uuid.UUID
    admin_id: uuid.UUID
    name: str
    cost: Decimal
    renewal_frequency: RenewalFrequency
    start_date: date
    next_renewal_date: date
    category: Optional[str] = None
    auto_renews: bool = True
    is_shared: bool = False
    max_members: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    def seats_used(self, member_count: int) -> int:
        """Seats taken by member_count membership rows plus the implicit admin."""
        return member_count + 1


class SubscriptionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    cost: Decimal = Field(..., ge=0)
    renewal_frequency: RenewalFrequency
    start_date: date
    next_renewal_date: date
    category: Optional[str] = None
    auto_renews: bool = True
    is_shared: bool = False
    max_members: Optional[int] = Field(default=None, ge=1)


class SubscriptionUpdate(BaseModel):
    """Partial update. admin_id is absent: it never changes after creation."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    cost: Optional[Decimal] = Field(default=None, ge=0)
    renewal_frequency: Optional[RenewalFrequency] = None
    start_date: Optional[date] = None
    next_renewal_date: Optional[date] = None
    category: Optional[str] = None
    auto_renews: Optional[bool] = None
    is_shared: Optional[bool] = None
    max_members: Optional[int] = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}
