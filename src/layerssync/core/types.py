"""Shared types for layerssync.

This module defines enums used across the queue, the local store and
the sync provider.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Overall state of the sync engine.

    Reported by SyncProvider.status() and shown by the CLI.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"
    SUSPENDED = "suspended"  # No identity available


class EntityType(str, Enum):
    """Kinds of records subject to sync."""

    DOCUMENT = "document"
    FOLDER = "folder"
    COLLABORATOR_LINK = "collaborator_link"
    ATTACHMENT_METADATA = "attachment_metadata"


class Operation(str, Enum):
    """Mutation carried by a queue entry."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class EntryStatus(str, Enum):
    """Delivery status of a queue entry."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


class EntitySyncState(str, Enum):
    """Sync state of a locally mirrored entity.

    SYNCED implies the local copy matches the last observed remote version.
    """

    SYNCED = "synced"
    PENDING_LOCAL_CHANGES = "pending_local_changes"
    CONFLICTED = "conflicted"
