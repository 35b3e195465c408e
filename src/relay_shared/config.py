"""Configuration loading for relay with TOML support."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .agent_models import AgentConfig, MCPServerConfig, PermissionPolicy
from .paths import get_config_path

DEFAULT_AGENT_ID = "default"


class ExchangeConfig(BaseModel):
    """Timing knobs for a single send/respond exchange."""

    timeout_seconds: float = Field(default=300.0, gt=0, description="Overall exchange timeout")
    chunk_size: int = Field(default=24, ge=1, description="Fallback streaming chunk size")
    chunk_delay_ms: float = Field(default=15.0, ge=0, description="Delay between fallback chunks")
    drain_delay_ms: float = Field(
        default=50.0, ge=0, description="Grace period before detaching listeners"
    )
    responder_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Max wait for a permission or user-input answer"
    )


class HistoryConfig(BaseModel):
    """Message history cache configuration."""

    max_entries: int = Field(default=100, ge=1, description="Entries kept per session")


class RuntimeConfig(BaseModel):
    """Agent runtime configuration."""

    default_model: str = "claude-sonnet-4-5"
    working_dir: str = Field(default_factory=os.getcwd)
    cli_path: str | None = None


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8787


def default_agent() -> AgentConfig:
    """Built-in agent used when no agent is configured."""
    return AgentConfig(
        id=DEFAULT_AGENT_ID,
        name="assistant",
        display_name="General Assistant",
        description="Default general purpose assistant",
        permission_policy=PermissionPolicy.ASK_USER,
        is_default=True,
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    default_agent: str = DEFAULT_AGENT_ID
    agents: list[AgentConfig] = Field(default_factory=list)
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        if not self.agents:
            self.agents = [default_agent()]


def load_relay_config(path: str | Path | None = None) -> RelayConfig:
    """Load relay configuration from TOML with validation.

    Falls back to defaults if the config file doesn't exist or cannot be parsed.
    """
    config_path = Path(path) if path is not None else get_config_path()
    config_data: dict[str, Any] = {}

    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Failed to load config from {}: {}", config_path, e)

    try:
        return RelayConfig(**config_data)
    except ValidationError as e:
        logger.warning("Config validation failed, falling back to defaults: {}", e)
        return RelayConfig()
