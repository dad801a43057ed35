"""Notification outbox: notifications appended with the write that causes them."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin, _utcnow


class NotificationOutbox(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "notification_outbox"

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    recipient_id: uuid.UUID = Field(foreign_key="users.user_id", nullable=False)
    # No foreign key: an event may outlive its subscription and is then discarded.
    subscription_id: Optional[uuid.UUID] = Field(default=None, index=True)
    message: str = Field(nullable=False)
    type: str = Field(nullable=False)  # invite | info
    state: str = Field(default="pending", nullable=False, index=True)  # pending | delivered | discarded
    attempts: int = Field(default=0, nullable=False)
    next_attempt_at: datetime = Field(
        default_factory=_utcnow, nullable=False, sa_type=sa.DateTime(timezone=True)
    )
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    notification_id: Optional[uuid.UUID] = None
    last_error: Optional[str] = None
