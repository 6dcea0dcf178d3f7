"""
Application configuration.

``load_config`` reads ``config/ccsync.yaml`` (plus its ``.local`` override),
expands environment references, and validates the result into ``AppConfig``.
"""

from __future__ import annotations

import os
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ccsync.errors import ConfigError

from .loaders import load_layered_yaml, resolve_config_path

DEFAULT_CONFIG_PATH = "config/ccsync.yaml"


class ServerConfig(BaseModel):
    base_url: str = "http://localhost:5000"
    ws_url: str = "ws://localhost:5000/ws"
    token: str = ""

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class ConnectionConfig(BaseModel):
    """Push channel behaviour; defaults follow the dashboard socket options."""

    reconnect: bool = True
    reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_delay_ms: int = Field(default=1000, ge=0)
    reconnect_delay_max_ms: int = Field(default=5000, ge=0)
    connect_timeout_ms: int = Field(default=20000, gt=0)
    ack_timeout_ms: int = Field(default=10000, gt=0)

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based), capped."""
        delay_ms = self.reconnect_delay_ms * (2 ** max(0, attempt - 1))
        return min(delay_ms, self.reconnect_delay_max_ms) / 1000.0


class SnapshotConfig(BaseModel):
    timeout_ms: int = Field(default=10000, gt=0)


class QueueConfig(BaseModel):
    tick_interval_seconds: float = Field(default=1.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"


class DomainConfig(BaseModel):
    enabled: bool = True
    history_capacity: Optional[int] = Field(default=None, ge=1)
    campaign_id: Optional[str] = None


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    domains: Dict[str, DomainConfig] = Field(default_factory=dict)

    def domain(self, name: str) -> DomainConfig:
        return self.domains.get(name) or DomainConfig()


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration.

    Args:
        path: Config file path; defaults to ``CCSYNC_CONFIG`` or
            ``config/ccsync.yaml`` relative to the project root.

    Raises:
        ConfigError: file missing, unparseable, or failing validation.
    """
    resolved = resolve_config_path(path or os.getenv("CCSYNC_CONFIG") or DEFAULT_CONFIG_PATH)
    data = load_layered_yaml(resolved)
    try:
        return AppConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {resolved}: {exc}") from exc


__all__ = [
    "AppConfig",
    "ConnectionConfig",
    "DomainConfig",
    "LoggingConfig",
    "QueueConfig",
    "ServerConfig",
    "SnapshotConfig",
    "load_config",
]
