"""Core module - Shared configuration and enums."""

from layerssync.core.config import ServerConfig, SyncConfig, default_data_dir
from layerssync.core.types import (
    EntitySyncState,
    EntityType,
    EntryStatus,
    Operation,
    SyncState,
)

__all__ = [
    # Config
    "ServerConfig",
    "SyncConfig",
    "default_data_dir",
    # Types
    "EntitySyncState",
    "EntityType",
    "EntryStatus",
    "Operation",
    "SyncState",
]
