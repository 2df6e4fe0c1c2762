"""
Configuration loading and validation.

Loads sync configuration from a YAML file. Secrets (API key, password) are
resolved from environment variables and never stored in config files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "CRM_SYNC_API_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30
    stream_heartbeat_timeout_seconds: int = 90

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class AuthConfig(BaseModel):
    email: str | None = None
    password_env: str = "CRM_SYNC_PASSWORD"

    @property
    def password(self) -> str | None:
        return os.environ.get(self.password_env)


class CacheConfig(BaseModel):
    db_path: str = "./data/crm_sync_cache.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090


class SyncConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> SyncConfig:
    """Load and validate sync configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return SyncConfig.model_validate(raw)
