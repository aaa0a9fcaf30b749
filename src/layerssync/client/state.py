"""Local store adapters for the sync client.

This module provides:
- LocalStore: Capability-uniform interface over platform storage
- SQLiteLocalStore: Embedded relational store (desktop and mobile)
- KeyValueLocalStore: Store over a browser-style key-value storage (web)
- KeyValueStorage / MemoryKeyValueStorage: the key-value capability

Architecture:
    The store exclusively owns the on-disk representation of both the
    synced-entity mirror and the sync queue. The queue keeps an in-memory
    index and writes every change through the store, so the provider holds
    no state that a restart would lose.

    Every write failure is raised as StorageWriteFailure. Reads are not
    wrapped: a store that cannot be read is a startup error.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from layerssync.client.sync.types import StorageWriteFailure, SyncedEntity
from layerssync.core.types import EntitySyncState, EntityType

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

PULL_CURSOR_KEY = "pull_cursor"


def _pull_cursor_key(user_id: str | None) -> str:
    return f"{PULL_CURSOR_KEY}:{user_id}" if user_id else PULL_CURSOR_KEY


class LocalStore(ABC):
    """Durable storage for synced entities, queue records and sync state."""

    # === Entities ===

    @abstractmethod
    def get(self, entity_type: EntityType, entity_id: str) -> SyncedEntity | None:
        """Get an entity (tombstones included)."""

    @abstractmethod
    def put(self, entity: SyncedEntity) -> None:
        """Insert or replace an entity."""

    @abstractmethod
    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Remove an entity from the mirror."""

    @abstractmethod
    def list_entities(
        self,
        entity_type: EntityType | None = None,
        include_deleted: bool = False,
    ) -> list[SyncedEntity]:
        """List entities, optionally filtered by type."""

    @abstractmethod
    def increment_local_version(self, entity_type: EntityType, entity_id: str) -> int:
        """Atomically bump and return the local change counter of an entity.

        The new value is ``max(counter, remote_version) + 1``. The counter
        outlives the entity, so it never goes backwards.
        """

    def list_pending(self) -> list[SyncedEntity]:
        """List entities whose local state is not synced."""
        return [
            e for e in self.list_entities(include_deleted=True)
            if e.sync_state != EntitySyncState.SYNCED
        ]

    def list_conflicted(self) -> list[SyncedEntity]:
        """List entities awaiting conflict review."""
        return [
            e for e in self.list_entities(include_deleted=True)
            if e.sync_state == EntitySyncState.CONFLICTED
        ]

    # === Queue records ===

    @abstractmethod
    def save_entry(self, record: dict[str, Any]) -> None:
        """Insert or replace a queue record (see QueueEntry.to_record)."""

    @abstractmethod
    def delete_entry(self, entry_id: str) -> None:
        """Remove a queue record."""

    @abstractmethod
    def load_entries(self) -> list[dict[str, Any]]:
        """Load all raw queue records."""

    # === Sync state ===

    @abstractmethod
    def get_state(self, key: str) -> str | None:
        """Get a sync state value."""

    @abstractmethod
    def set_state(self, key: str, value: str) -> None:
        """Set a sync state value."""

    def get_pull_cursor(self, user_id: str | None = None) -> int:
        """Get the highest remote version seen by the pull path.

        Each identity has its own cursor: what one user has pulled says
        nothing about what another may see.
        """
        value = self.get_state(_pull_cursor_key(user_id))
        return int(value) if value else 0

    def set_pull_cursor(self, version: int, user_id: str | None = None) -> None:
        """Set the pull cursor of an identity."""
        self.set_state(_pull_cursor_key(user_id), str(version))

    def close(self) -> None:
        """Release resources."""


def _entity_to_dict(entity: SyncedEntity) -> dict[str, Any]:
    return {
        "entity_type": entity.entity_type.value,
        "id": entity.id,
        "content": entity.content,
        "remote_version": entity.remote_version,
        "local_version": entity.local_version,
        "updated_at": entity.updated_at,
        "sync_state": entity.sync_state.value,
        "deleted": entity.deleted,
        "remote_deleted": entity.remote_deleted,
    }


def _entity_from_dict(data: dict[str, Any]) -> SyncedEntity:
    content = data["content"]
    if isinstance(content, str):
        content = json.loads(content)
    return SyncedEntity(
        entity_type=EntityType(data["entity_type"]),
        id=data["id"],
        content=content or {},
        remote_version=int(data["remote_version"]),
        local_version=int(data["local_version"]),
        updated_at=float(data["updated_at"]),
        sync_state=EntitySyncState(data["sync_state"]),
        deleted=bool(data["deleted"]),
        remote_deleted=bool(data["remote_deleted"]),
    )


class SQLiteLocalStore(LocalStore):
    """SQLite-based local store used on desktop and mobile.

    Autocommit mode: each statement is durable on return. The version
    counter uses an explicit IMMEDIATE transaction for read-modify-write.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local store database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
        """
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")

        self._create_tables()
        logger.debug("Opened local store at %s", self._db_path)

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                content TEXT NOT NULL,
                remote_version INTEGER NOT NULL DEFAULT 0,
                local_version INTEGER NOT NULL DEFAULT 0,
                updated_at REAL NOT NULL,
                sync_state TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                remote_deleted INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (entity_type, id)
            );

            CREATE INDEX IF NOT EXISTS idx_entities_sync_state
                ON entities(sync_state);

            -- Local change counters (outlive deleted entities)
            CREATE TABLE IF NOT EXISTS local_versions (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                PRIMARY KEY (entity_type, id)
            );

            CREATE TABLE IF NOT EXISTS sync_queue (
                entry_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT,
                local_version INTEGER NOT NULL,
                base_version INTEGER,
                enqueued_at REAL NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                user_id TEXT,
                last_error TEXT,
                next_attempt_at REAL NOT NULL DEFAULT 0,
                sent INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_sync_queue_enqueued_at
                ON sync_queue(enqueued_at);

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    @contextlib.contextmanager
    def _write(self, what: str) -> Iterator[None]:
        """Serialize a write and convert SQLite errors."""
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                logger.error("Local store write failed (%s): %s", what, e)
                raise StorageWriteFailure(f"Failed to {what}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Entities ===

    def get(self, entity_type: EntityType, entity_id: str) -> SyncedEntity | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type.value, entity_id),
            ).fetchone()
        if row is None:
            return None
        return _entity_from_dict(dict(row))

    def put(self, entity: SyncedEntity) -> None:
        data = _entity_to_dict(entity)
        with self._write(f"store {entity.entity_type.value}/{entity.id}"):
            self._conn.execute(
                """
                INSERT OR REPLACE INTO entities (
                    entity_type, id, content, remote_version, local_version,
                    updated_at, sync_state, deleted, remote_deleted
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["entity_type"],
                    data["id"],
                    json.dumps(data["content"]),
                    data["remote_version"],
                    data["local_version"],
                    data["updated_at"],
                    data["sync_state"],
                    int(data["deleted"]),
                    int(data["remote_deleted"]),
                ),
            )

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        with self._write(f"delete {entity_type.value}/{entity_id}"):
            self._conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type.value, entity_id),
            )

    def list_entities(
        self,
        entity_type: EntityType | None = None,
        include_deleted: bool = False,
    ) -> list[SyncedEntity]:
        query = "SELECT * FROM entities"
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type.value)
        if not include_deleted:
            clauses.append("deleted = 0")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY entity_type, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_entity_from_dict(dict(row)) for row in rows]

    def increment_local_version(self, entity_type: EntityType, entity_id: str) -> int:
        with self._write(f"bump version of {entity_type.value}/{entity_id}"):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT version FROM local_versions WHERE entity_type = ? AND id = ?",
                    (entity_type.value, entity_id),
                ).fetchone()
                counter = row["version"] if row else 0
                row = self._conn.execute(
                    "SELECT remote_version FROM entities WHERE entity_type = ? AND id = ?",
                    (entity_type.value, entity_id),
                ).fetchone()
                remote = row["remote_version"] if row else 0

                version = max(counter, remote) + 1
                self._conn.execute(
                    "INSERT OR REPLACE INTO local_versions (entity_type, id, version) "
                    "VALUES (?, ?, ?)",
                    (entity_type.value, entity_id, version),
                )
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        return version

    # === Queue records ===

    def save_entry(self, record: dict[str, Any]) -> None:
        with self._write(f"persist queue entry {record['entry_id']}"):
            self._conn.execute(
                """
                INSERT OR REPLACE INTO sync_queue (
                    entry_id, entity_type, entity_id, operation, payload,
                    local_version, base_version, enqueued_at, attempts,
                    status, user_id, last_error, next_attempt_at, sent
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["entry_id"],
                    record["entity_type"],
                    record["entity_id"],
                    record["operation"],
                    record["payload"],
                    record["local_version"],
                    record["base_version"],
                    record["enqueued_at"],
                    record["attempts"],
                    record["status"],
                    record["user_id"],
                    record["last_error"],
                    record["next_attempt_at"],
                    record.get("sent", 0),
                ),
            )

    def delete_entry(self, entry_id: str) -> None:
        with self._write(f"remove queue entry {entry_id}"):
            self._conn.execute("DELETE FROM sync_queue WHERE entry_id = ?", (entry_id,))

    def load_entries(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sync_queue ORDER BY enqueued_at"
            ).fetchall()
        return [dict(row) for row in rows]

    # === Sync state ===

    def get_state(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?",
                (key,),
            ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._write(f"set {key}"):
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )


def _enqueued_at(record: dict[str, Any]) -> float:
    try:
        return float(record.get("enqueued_at") or 0.0)
    except (TypeError, ValueError):
        return 0.0


class KeyValueStorage(Protocol):
    """Browser-style string key-value storage (localStorage semantics)."""

    def get_item(self, key: str) -> str | None:
        """Get a value, or None if absent."""
        ...

    def set_item(self, key: str, value: str) -> None:
        """Set a value."""
        ...

    def remove_item(self, key: str) -> None:
        """Remove a value."""
        ...

    def keys(self) -> list[str]:
        """List all keys."""
        ...


class MemoryKeyValueStorage:
    """Dict-backed KeyValueStorage (ephemeral sessions and tests)."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class KeyValueLocalStore(LocalStore):
    """Local store over a KeyValueStorage, used on the web.

    Layout (all values JSON or plain strings, under ``prefix``):
        entity:<type>:<id>   entity dictionary
        counter:<type>:<id>  local change counter
        queue:<entry_id>     queue record
        state:<key>          sync state value
    """

    def __init__(self, storage: KeyValueStorage, prefix: str = "layers:") -> None:
        self._storage = storage
        self._prefix = prefix
        self._lock = threading.RLock()

    def _key(self, *parts: str) -> str:
        return self._prefix + ":".join(parts)

    @contextlib.contextmanager
    def _write(self, what: str) -> Iterator[None]:
        """Serialize a write and convert storage errors (quota, ...)."""
        with self._lock:
            try:
                yield
            except StorageWriteFailure:
                raise
            except Exception as e:
                logger.error("Local store write failed (%s): %s", what, e)
                raise StorageWriteFailure(f"Failed to {what}: {e}") from e

    def _scan(self, kind: str) -> list[tuple[str, str]]:
        start = self._key(kind, "")
        items = []
        for key in self._storage.keys():
            if key.startswith(start):
                value = self._storage.get_item(key)
                if value is not None:
                    items.append((key[len(start):], value))
        return items

    # === Entities ===

    def get(self, entity_type: EntityType, entity_id: str) -> SyncedEntity | None:
        with self._lock:
            raw = self._storage.get_item(self._key("entity", entity_type.value, entity_id))
        if raw is None:
            return None
        return _entity_from_dict(json.loads(raw))

    def put(self, entity: SyncedEntity) -> None:
        with self._write(f"store {entity.entity_type.value}/{entity.id}"):
            self._storage.set_item(
                self._key("entity", entity.entity_type.value, entity.id),
                json.dumps(_entity_to_dict(entity)),
            )

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        with self._write(f"delete {entity_type.value}/{entity_id}"):
            self._storage.remove_item(self._key("entity", entity_type.value, entity_id))

    def list_entities(
        self,
        entity_type: EntityType | None = None,
        include_deleted: bool = False,
    ) -> list[SyncedEntity]:
        with self._lock:
            entities = [_entity_from_dict(json.loads(raw)) for _, raw in self._scan("entity")]
        if entity_type is not None:
            entities = [e for e in entities if e.entity_type == entity_type]
        if not include_deleted:
            entities = [e for e in entities if not e.deleted]
        return sorted(entities, key=lambda e: (e.entity_type.value, e.id))

    def increment_local_version(self, entity_type: EntityType, entity_id: str) -> int:
        key = self._key("counter", entity_type.value, entity_id)
        with self._write(f"bump version of {entity_type.value}/{entity_id}"):
            raw = self._storage.get_item(key)
            counter = int(raw) if raw else 0
            entity = self.get(entity_type, entity_id)
            remote = entity.remote_version if entity else 0
            version = max(counter, remote) + 1
            self._storage.set_item(key, str(version))
        return version

    # === Queue records ===

    def save_entry(self, record: dict[str, Any]) -> None:
        with self._write(f"persist queue entry {record['entry_id']}"):
            self._storage.set_item(self._key("queue", record["entry_id"]), json.dumps(record))

    def delete_entry(self, entry_id: str) -> None:
        with self._write(f"remove queue entry {entry_id}"):
            self._storage.remove_item(self._key("queue", entry_id))

    def load_entries(self) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        with self._lock:
            items = self._scan("queue")
        for entry_id, raw in items:
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                # Left for the queue to report as corrupt
                record = None
            if not isinstance(record, dict):
                record = {"entry_id": entry_id}
            records.append(record)
        return sorted(records, key=_enqueued_at)

    # === Sync state ===

    def get_state(self, key: str) -> str | None:
        with self._lock:
            return self._storage.get_item(self._key("state", key))

    def set_state(self, key: str, value: str) -> None:
        with self._write(f"set {key}"):
            self._storage.set_item(self._key("state", key), value)
