"""Subscription model: the root of the membership/notification graph."""

from datetime import date
from decimal import Decimal
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin


class Subscription(TimestampMixin, SQLModel, table=True):
    __tablename__ = "subscriptions"

    subscription_id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    admin_id: uuid.UUID = Field(foreign_key="users.user_id", nullable=False, index=True)
    name: str = Field(nullable=False)
    cost: Decimal = Field(nullable=False, sa_type=sa.Numeric(12, 2))
    renewal_frequency: str = Field(nullable=False)  # daily | weekly | monthly | quarterly | yearly
    start_date: date = Field(nullable=False)
    next_renewal_date: date = Field(nullable=False)
    category: Optional[str] = None
    auto_renews: bool = Field(default=True, nullable=False)
    is_shared: bool = Field(default=False, nullable=False)
    max_members: Optional[int] = None
