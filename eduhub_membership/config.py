"""
Configuration loading and validation.

Loads membership-core configuration from a YAML file with environment
variable resolution for secrets (the push API key is never stored in
config files).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    db_path: str = "./data/eduhub.db"


class SessionConfig(BaseModel):
    # A signed-in identity with no user record is tolerated this long after
    # account creation (registration write still in flight).
    ghost_user_grace_seconds: float = Field(default=15.0, ge=0)


class PushConfig(BaseModel):
    url: str = "http://localhost:3000"
    api_key_env: str = "EDUHUB_PUSH_API_KEY"
    global_topic: str = "all_users"
    verify_tls: bool = True
    request_timeout_seconds: int = 10

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MembershipConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path) -> MembershipConfig:
    """Load and validate membership configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return MembershipConfig.model_validate(raw)
