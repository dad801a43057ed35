"""Membership and user-directory schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .common import MembershipStatus


class MembershipRow(BaseModel):
    subscription_id: uuid.UUID
    user_id: uuid.UUID
    status: MembershipStatus
    joined_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UserRow(BaseModel):
    user_id: uuid.UUID
    username: Optional[str] = None
    name: Optional[str] = None

    model_config = {"from_attributes": True}


class MemberInfo(BaseModel):
    """A membership joined with the member's directory entry."""
    user_id: uuid.UUID
    status: MembershipStatus
    joined_at: Optional[datetime] = None
    username: Optional[str] = None
    name: Optional[str] = None
