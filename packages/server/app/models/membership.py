"""Subscription membership (join table keyed by subscription and user)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel


class SubscriptionMember(SQLModel, table=True):
    __tablename__ = "subscription_members"

    subscription_id: uuid.UUID = Field(
        foreign_key="subscriptions.subscription_id", primary_key=True
    )
    user_id: uuid.UUID = Field(foreign_key="users.user_id", primary_key=True)
    status: str = Field(nullable=False)  # pending | accepted | rejected | left
    joined_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
