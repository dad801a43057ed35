"""Notification and realtime change schemas."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from .common import ChangeType, NotificationStatus, NotificationType


class NotificationRow(BaseModel):
    notification_id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    message: str
    type: NotificationType
    status: NotificationStatus = NotificationStatus.UNREAD
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ChangeEvent(BaseModel):
    """One committed row change, as published on the realtime stream."""
    type: ChangeType
    table: str
    record: Optional[dict[str, Any]] = None
    old_record: Optional[dict[str, Any]] = None
    commit_timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def row(self) -> dict[str, Any]:
        """The row the event is about: the new record, or the old one for deletes."""
        return self.record if self.record is not None else (self.old_record or {})
