"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: the sync error taxonomy
- QueueEntry: One durable pending mutation
- SyncedEntity: Local mirror of a remote record
- PushResult, RemoteChange, PullResult: Backend responses
- ProviderStats: Counters kept by the sync provider
- Type aliases for callbacks
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from layerssync.core.types import (
    EntitySyncState,
    EntityType,
    EntryStatus,
    Operation,
)

# (entity_type, entity_id)
EntityKey = tuple[EntityType, str]


class SyncError(Exception):
    """Base exception for sync errors."""


class StorageWriteFailure(SyncError):
    """A durable write to the local store failed.

    Fatal to the user action that triggered it; always surfaced to the caller.
    """


class TransientNetworkFailure(SyncError):
    """Timeout, 5xx or connectivity drop. Retried with backoff."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentRejection(SyncError):
    """Validation or authorization failure. Never retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictDetected(SyncError):
    """The backend holds a newer revision than the entry was based on.

    Attributes:
        remote_version: Current server revision of the record.
        snapshot: The server's copy of the record, if sent.
    """

    def __init__(
        self,
        remote_version: int,
        snapshot: RemoteChange | None = None,
        message: str | None = None,
    ) -> None:
        self.remote_version = remote_version
        self.snapshot = snapshot
        super().__init__(message or f"Conflict: server has revision {remote_version}")


class QueueCorruption(SyncError):
    """A persisted queue record could not be parsed."""


@dataclass
class QueueEntry:
    """A pending local mutation awaiting delivery to the backend.

    Attributes:
        entry_id: Unique identifier of this entry.
        entity_type: Kind of record mutated.
        entity_id: Client-generated id of the record.
        operation: Insert, update or delete.
        payload: Full snapshot (insert), changed fields (update), None (delete).
        local_version: Local change counter at enqueue time.
        base_version: Remote version the edit was made against (None for inserts).
        enqueued_at: Unix timestamp of the first enqueue.
        attempts: Number of failed delivery attempts.
        status: Delivery status.
        user_id: Identity that made the mutation.
        last_error: Error of the most recent failed attempt.
        next_attempt_at: Earliest time the entry may be drained again.
        sent: Whether a push of this entry may have reached the backend.
    """

    entry_id: str
    entity_type: EntityType
    entity_id: str
    operation: Operation
    payload: dict[str, Any] | None
    local_version: int
    base_version: int | None = None
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0
    status: EntryStatus = EntryStatus.PENDING
    user_id: str | None = None
    last_error: str | None = None
    next_attempt_at: float = 0.0
    sent: bool = False

    @classmethod
    def create(
        cls,
        entity_type: EntityType,
        entity_id: str,
        operation: Operation,
        payload: dict[str, Any] | None,
        local_version: int,
        base_version: int | None = None,
        user_id: str | None = None,
        enqueued_at: float | None = None,
    ) -> QueueEntry:
        """Create a new pending entry with a generated id."""
        if operation == Operation.DELETE:
            payload = None
        elif payload is None:
            raise ValueError(f"{operation.value} requires a payload")
        return cls(
            entry_id=uuid.uuid4().hex,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=dict(payload) if payload is not None else None,
            local_version=local_version,
            base_version=base_version,
            enqueued_at=time.time() if enqueued_at is None else enqueued_at,
            user_id=user_id,
        )

    @property
    def key(self) -> EntityKey:
        """Coalescing key of this entry."""
        return (self.entity_type, self.entity_id)

    def copy(self, **changes: Any) -> QueueEntry:
        """Return a copy with some fields changed."""
        return replace(self, **changes)

    def to_record(self) -> dict[str, Any]:
        """Serialize to a flat record (payload as JSON text)."""
        return {
            "entry_id": self.entry_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "operation": self.operation.value,
            "payload": json.dumps(self.payload),
            "local_version": self.local_version,
            "base_version": self.base_version,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "status": self.status.value,
            "user_id": self.user_id,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at,
            "sent": int(self.sent),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> QueueEntry:
        """Parse a persisted record.

        Raises:
            QueueCorruption: If the record is malformed.
        """
        try:
            payload = json.loads(record["payload"])
            if payload is not None and not isinstance(payload, dict):
                raise TypeError("payload is not an object")
            base_version = record.get("base_version")
            return cls(
                entry_id=str(record["entry_id"]),
                entity_type=EntityType(record["entity_type"]),
                entity_id=str(record["entity_id"]),
                operation=Operation(record["operation"]),
                payload=payload,
                local_version=int(record["local_version"]),
                base_version=int(base_version) if base_version is not None else None,
                enqueued_at=float(record["enqueued_at"]),
                attempts=int(record["attempts"]),
                status=EntryStatus(record["status"]),
                user_id=record.get("user_id"),
                last_error=record.get("last_error"),
                next_attempt_at=float(record.get("next_attempt_at") or 0.0),
                sent=bool(record.get("sent") or False),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise QueueCorruption(
                f"Malformed queue record {record.get('entry_id')!r}: {e}"
            ) from e

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"QueueEntry({self.operation.name} {self.entity_type.value}/{self.entity_id}, "
            f"v={self.local_version}, status={self.status.name}, attempts={self.attempts})"
        )


@dataclass
class SyncedEntity:
    """Local mirror of a remote record.

    Attributes:
        entity_type: Kind of record.
        id: Client-generated record id.
        content: Record fields (document body, folder name, ...).
        remote_version: Last observed server revision (0 = never acknowledged).
        local_version: Local change counter.
        updated_at: Unix timestamp of the last local write.
        sync_state: synced, pending local changes or conflicted.
        deleted: Local tombstone awaiting acknowledgement of its delete.
        remote_deleted: The backend deleted the record while local edits
            were outstanding.
    """

    entity_type: EntityType
    id: str
    content: dict[str, Any]
    remote_version: int = 0
    local_version: int = 0
    updated_at: float = field(default_factory=time.time)
    sync_state: EntitySyncState = EntitySyncState.PENDING_LOCAL_CHANGES
    deleted: bool = False
    remote_deleted: bool = False

    @property
    def key(self) -> EntityKey:
        """Key of this entity."""
        return (self.entity_type, self.id)

    def copy(self, **changes: Any) -> SyncedEntity:
        """Return a copy with some fields changed."""
        return replace(self, **changes)


@dataclass
class RemoteChange:
    """A record as returned by the backend.

    Attributes:
        entity_type: Kind of record.
        entity_id: Record id.
        remote_version: Server revision.
        content: Record fields (None when deleted).
        deleted: Whether the record was deleted on the server.
    """

    entity_type: EntityType
    entity_id: str
    remote_version: int
    content: dict[str, Any] | None = None
    deleted: bool = False

    @property
    def key(self) -> EntityKey:
        """Key of the changed entity."""
        return (self.entity_type, self.entity_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteChange:
        """Create from API response dictionary."""
        return cls(
            entity_type=EntityType(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            remote_version=int(data["remote_version"]),
            content=data.get("content"),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class PushResult:
    """Successful push response.

    Attributes:
        remote_version: Canonical revision assigned by the server.
        content: Canonical record content, if the server returned it.
    """

    remote_version: int
    content: dict[str, Any] | None = None


@dataclass
class PullResult:
    """Result of a pull call."""

    changes: list[RemoteChange]
    has_more: bool = False


@dataclass
class ProviderStats:
    """Statistics for the sync provider."""

    pushed: int = 0
    acknowledged: int = 0
    conflicts: int = 0
    retries: int = 0
    failures: int = 0
    pulled: int = 0
    errors: int = 0


# Type alias for online status callbacks
OnlineCallback = Callable[[bool], None]

# Type alias for subscription handles
Unsubscribe = Callable[[], None]
