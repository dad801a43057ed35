"""
Configuration loading and validation.

Loads client configuration from a YAML file. The access token is resolved
from the environment variable the file names; it is never stored in the file.
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class BackendConfig(BaseModel):
    url: str = "http://localhost:8000"
    verify_tls: bool = True
    request_timeout_seconds: float = 30


class AuthConfig(BaseModel):
    access_token_env: str = "KLYPP_ACCESS_TOKEN"
    user_id: Optional[uuid.UUID] = None

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)


class RetryConfig(BaseModel):
    attempts: int = Field(default=3, ge=1)
    base_seconds: float = Field(default=0.5, ge=0)


class RealtimeConfig(BaseModel):
    reconnect_base_seconds: float = Field(default=1.0, gt=0)
    reconnect_max_seconds: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "text"


class ClientConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path) -> ClientConfig:
    """Load and validate client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return ClientConfig.model_validate(raw)
