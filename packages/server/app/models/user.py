"""User directory model (one row per account, looked up by username)."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin


class User(CreatedAtMixin, SQLModel, table=True):
    __tablename__ = "users"

    user_id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    username: Optional[str] = Field(default=None, unique=True, index=True)
    name: Optional[str] = None
    currency: str = Field(default="USD", nullable=False)
    theme: str = Field(default="light", nullable=False)  # light | dark
