"""Configuration utilities for the layers-sync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path

from layerssync.client.auth import Identity
from layerssync.core.config import SyncConfig

# Keys accepted by `layers-sync config set`
CONFIG_KEYS = (
    "server_url",
    "timeout",
    "verify_ssl",
    "user_id",
    "token",
    "data_dir",
    "batch_size",
    "max_attempts",
    "backoff_base",
    "backoff_cap",
    "backoff_jitter",
    "sync_interval",
    "max_concurrent",
    "network_check_interval",
)

SECRET_KEYS = frozenset({"token"})


def get_config_dir() -> Path:
    """Get the configuration directory for layers-sync.

    Returns:
        Path to ~/.layers-sync or equivalent.
    """
    return Path.home() / ".layers-sync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def build_sync_config(config: dict[str, str]) -> SyncConfig:
    """Build the SyncConfig for a config file dictionary.

    The local store lives in the config directory unless ``data_dir`` is set.

    Raises:
        ValueError: If a value is invalid.
    """
    data = dict(config)
    data.setdefault("data_dir", str(get_config_dir()))
    return SyncConfig.from_dict(data)


def get_identity(config: dict[str, str]) -> Identity | None:
    """Get the signed-in identity from config.

    Returns:
        Identity if user_id and token are set, None otherwise.
    """
    user_id = config.get("user_id")
    token = config.get("token")
    if user_id and token:
        return Identity(user_id=user_id, access_token=token)
    return None
