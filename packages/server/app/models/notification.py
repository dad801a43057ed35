"""Notification model (one recipient per row)."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class Notification(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "notifications"

    notification_id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="users.user_id", nullable=False, index=True)
    subscription_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="subscriptions.subscription_id",
        ondelete="CASCADE",
        index=True,
    )
    message: str = Field(nullable=False)
    type: str = Field(nullable=False)  # invite | info
    status: str = Field(default="unread", nullable=False)  # unread | read
