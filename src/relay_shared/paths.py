"""Shared filesystem helpers for relay projects."""

from __future__ import annotations

import os
import platform
from pathlib import Path


def get_config_dir() -> Path:
    """Get platform-specific config directory."""
    match platform.system():
        case "Windows":
            return Path(os.getenv("LOCALAPPDATA", "")) / "relay"
        case "Darwin":
            return Path.home() / "Library" / "Application Support" / "relay"
        case _:
            return Path.home() / ".config" / "relay"


def get_config_path() -> Path:
    """Get the config file path, honouring RELAY_CONFIG."""
    override = os.getenv("RELAY_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "config.toml"
