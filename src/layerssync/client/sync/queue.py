"""Durable sync queue of pending local mutations.

This module provides:
- SyncQueue: Ordered, coalescing, restart-safe log of QueueEntry records
- coalesce: Merge rule for two mutations of the same entity

The queue keeps an in-memory index of its entries and writes every change
through the LocalStore before touching the index, so a failed write leaves
the queue unchanged and is raised to the caller as StorageWriteFailure.

Invariants:
- At most one unsent PENDING entry per (entity_type, entity_id). A newer
  mutation coalesces into it. An entry that may have reached the backend
  (IN_FLIGHT, or returned after a push whose outcome is unknown) is never
  mutated in place: a follow-up edit creates a new entry queued behind it.
- drain() only hands out the oldest entry of each entity, and only while
  it is PENDING and due, so edits of one entity reach the backend in
  enqueue order.
- On load, IN_FLIGHT entries are reset to PENDING (at-least-once delivery).
  Malformed records are logged and skipped.

Usage:
    queue = SyncQueue(store, max_attempts=5)
    queue.enqueue(QueueEntry.create(EntityType.DOCUMENT, doc_id,
                                    Operation.UPDATE, {"title": "New"}, 3))
    for entry in queue.drain(limit=10):
        ...
        queue.acknowledge(entry.entry_id)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from layerssync.client.sync.retry import BackoffPolicy
from layerssync.client.sync.types import (
    EntityKey,
    QueueCorruption,
    QueueEntry,
    StorageWriteFailure,
    Unsubscribe,
)
from layerssync.core.types import EntityType, EntryStatus, Operation

if TYPE_CHECKING:
    from collections.abc import Iterator

    from layerssync.client.state import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


def coalesce(base: QueueEntry, incoming: QueueEntry) -> QueueEntry | None:
    """Merge a newer mutation into an older one of the same entity.

    The result keeps the identity of ``base`` (entry_id, enqueued_at,
    base_version, attempts) and carries the latest data.

    Only unsent entries are merged: an entry that may have reached the
    backend keeps its payload and newer mutations queue behind it.

    Args:
        base: The older, unsent entry.
        incoming: The newer entry.

    Returns:
        The merged entry, or None when the two cancel out (insert + delete).

    Raises:
        ValueError: For an update of an entity deleted by ``base``.
    """
    common = {
        "local_version": max(base.local_version, incoming.local_version),
        "user_id": incoming.user_id or base.user_id,
        "status": EntryStatus.PENDING,
    }
    old, new = base.operation, incoming.operation

    if new == Operation.DELETE:
        if old == Operation.INSERT:
            return None
        return base.copy(operation=Operation.DELETE, payload=None, **common)

    if old == Operation.DELETE:
        if new == Operation.UPDATE:
            raise ValueError(
                f"Cannot update {base.entity_type.value}/{base.entity_id}: "
                "entity is pending deletion"
            )
        # Re-created after a delete: the record still exists remotely
        return base.copy(operation=Operation.UPDATE, payload=dict(incoming.payload or {}), **common)

    if new == Operation.INSERT:
        return base.copy(payload=dict(incoming.payload or {}), **common)

    merged = dict(base.payload or {})
    merged.update(incoming.payload or {})
    return base.copy(payload=merged, **common)


class SyncQueue:
    """Durable FIFO of pending mutations with per-entity coalescing.

    Attributes:
        max_attempts: Failed attempts after which an entry is marked FAILED.
    """

    def __init__(
        self,
        store: LocalStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue and load persisted entries.

        Args:
            store: Local store holding the queue records.
            max_attempts: Attempt ceiling before an entry fails.
            backoff: Retry delay policy (default BackoffPolicy()).
            clock: Time source (injectable for tests).
        """
        self._store = store
        self.max_attempts = max_attempts
        self._backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, QueueEntry] = {}  # entry_id -> entry
        self._listeners: list[Callable[[QueueEntry], None]] = []
        self.corrupt_records = 0

        self._load()

    # === Persistence ===

    def _load(self) -> None:
        """Load entries from the store, recovering interrupted deliveries."""
        for record in self._store.load_entries():
            try:
                entry = QueueEntry.from_record(record)
            except QueueCorruption as e:
                self.corrupt_records += 1
                logger.warning("Skipping corrupt queue record: %s", e)
                continue
            self._entries[entry.entry_id] = entry

        recovered = self.recover()
        if self._entries:
            logger.info(
                "Loaded %d queue entries (%d interrupted in flight)",
                len(self._entries),
                recovered,
            )

    def recover(self) -> int:
        """Return IN_FLIGHT entries to PENDING.

        Called on load (the previous process died mid-push) and when the
        provider stops. Deliveries are at-least-once: the backend
        deduplicates a resent entry by entity and version. Recovered
        entries stay marked as sent.

        Returns:
            Number of entries recovered.
        """
        with self._lock:
            interrupted = [
                e for e in self._entries.values() if e.status == EntryStatus.IN_FLIGHT
            ]
            for entry in interrupted:
                self._save(entry.copy(status=EntryStatus.PENDING))
        return len(interrupted)

    def _save(self, entry: QueueEntry) -> QueueEntry:
        """Persist then index an entry."""
        self._store.save_entry(entry.to_record())
        self._entries[entry.entry_id] = entry
        return entry

    def _drop(self, entry_id: str) -> QueueEntry | None:
        """Delete then unindex an entry."""
        if entry_id not in self._entries:
            return None
        self._store.delete_entry(entry_id)
        return self._entries.pop(entry_id)

    def _find_unsent(self, key: EntityKey) -> QueueEntry | None:
        """The PENDING entry of an entity that was never pushed, if any."""
        for entry in self._entries.values():
            if entry.key == key and entry.status == EntryStatus.PENDING and not entry.sent:
                return entry
        return None

    def _heads(
        self,
        user_id: str | None = None,
        skip: Callable[[QueueEntry], bool] | None = None,
    ) -> list[QueueEntry]:
        """Oldest entry of each entity, in FIFO order, if it may be pushed.

        An entity whose oldest entry is IN_FLIGHT or FAILED contributes
        nothing, so later edits never overtake it.
        """
        seen: set[EntityKey] = set()
        heads: list[QueueEntry] = []
        for entry in sorted(self._entries.values(), key=lambda e: e.enqueued_at):
            if entry.key in seen:
                continue
            seen.add(entry.key)
            if entry.status != EntryStatus.PENDING:
                continue
            if user_id is not None and entry.user_id not in (None, user_id):
                continue
            if skip is not None and skip(entry):
                continue
            heads.append(entry)
        return heads

    # === Listeners ===

    def add_listener(self, callback: Callable[[QueueEntry], None]) -> Unsubscribe:
        """Register a callback invoked after every successful enqueue.

        Returns:
            Function removing the callback.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    # === Operations ===

    def enqueue(self, entry: QueueEntry) -> QueueEntry | None:
        """Durably append a mutation or coalesce it into a pending entry.

        Only an entry that was never pushed absorbs the mutation. Behind an
        entry that may have reached the backend the mutation is appended,
        so a delete following an unacknowledged insert is still sent.

        Args:
            entry: The new mutation (status PENDING).

        Returns:
            The stored entry (possibly the coalesced one), or None if the
            mutation cancelled a pending insert.

        Raises:
            StorageWriteFailure: If the write could not be persisted.
            ValueError: For an update of an entity pending deletion.
        """
        with self._lock:
            latest = self.outstanding(entry.entity_type, entry.entity_id)
            if (
                latest
                and latest[-1].operation == Operation.DELETE
                and entry.operation == Operation.UPDATE
            ):
                raise ValueError(
                    f"Cannot update {entry.entity_type.value}/{entry.entity_id}: "
                    "entity is pending deletion"
                )
            pending = self._find_unsent(entry.key)
            if pending is None:
                stored: QueueEntry | None = self._save(
                    entry.copy(status=EntryStatus.PENDING, sent=False)
                )
                logger.debug("Queued %s (queue size: %d)", stored, len(self._entries))
            else:
                stored = coalesce(pending, entry)
                if stored is None:
                    self._drop(pending.entry_id)
                    logger.debug(
                        "Cancelled unsent insert of %s/%s",
                        entry.entity_type.value,
                        entry.entity_id,
                    )
                else:
                    self._save(stored)
                    logger.debug("Coalesced into %s", stored)

        for callback in list(self._listeners):
            callback(stored or entry)
        return stored

    def drain(
        self,
        limit: int,
        user_id: str | None = None,
        skip: Callable[[QueueEntry], bool] | None = None,
    ) -> list[QueueEntry]:
        """Take up to ``limit`` due entries in FIFO order, marking them IN_FLIGHT.

        Args:
            limit: Maximum number of entries.
            user_id: Only take entries of this identity (entries without an
                identity are claimed). None takes every entry.
            skip: Predicate for entries to hold back (e.g. conflicted entities).

        Returns:
            Entries now IN_FLIGHT and marked sent, at most one per entity.
        """
        now = self._clock()
        batch: list[QueueEntry] = []
        with self._lock:
            for entry in self._heads(user_id, skip):
                if len(batch) >= limit:
                    break
                # Backing off: the entity's later edits wait too
                if entry.next_attempt_at > now:
                    continue
                batch.append(self._save(entry.copy(
                    status=EntryStatus.IN_FLIGHT,
                    user_id=entry.user_id or user_id,
                    sent=True,
                )))

        if batch:
            logger.debug("Drained %d entries", len(batch))
        return batch

    def acknowledge(self, entry_id: str) -> QueueEntry | None:
        """Remove a successfully applied entry."""
        with self._lock:
            entry = self._drop(entry_id)
        if entry:
            logger.debug("Acknowledged %s", entry)
        else:
            logger.warning("Acknowledge of unknown queue entry %s", entry_id)
        return entry

    def requeue(self, entry_id: str, reason: str) -> QueueEntry | None:
        """Return an IN_FLIGHT entry to PENDING after a transient failure.

        Increments ``attempts`` and schedules the next attempt with backoff.
        Past the attempt ceiling the entry becomes FAILED instead.

        Returns:
            The updated entry (None if unknown).
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                logger.warning("Requeue of unknown queue entry %s", entry_id)
                return None
            if entry.status != EntryStatus.IN_FLIGHT:
                logger.warning("Requeue of %s which is not in flight", entry)
                return entry

            attempts = entry.attempts + 1
            if attempts >= self.max_attempts:
                failed = self._save(entry.copy(
                    status=EntryStatus.FAILED,
                    attempts=attempts,
                    last_error=reason,
                ))
                logger.error(
                    "Giving up on %s after %d attempts: %s", failed, attempts, reason
                )
                return failed

            delay = self._backoff.delay(attempts)
            updated = self._save(entry.copy(
                status=EntryStatus.PENDING,
                attempts=attempts,
                last_error=reason,
                next_attempt_at=self._clock() + delay,
            ))
            logger.warning(
                "Attempt %d/%d failed for %s/%s: %s. Retrying in %.1fs",
                attempts,
                self.max_attempts,
                entry.entity_type.value,
                entry.entity_id,
                reason,
                delay,
            )
            return updated

    def release(self, entry_id: str, reason: str) -> QueueEntry | None:
        """Return an IN_FLIGHT entry whose push outcome could not be recorded.

        Same as requeue(). If that write fails too, the entry is returned to
        PENDING in memory only; the persisted IN_FLIGHT record is recovered
        on the next load.

        Returns:
            The updated entry (None if unknown).
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != EntryStatus.IN_FLIGHT:
                return entry
            try:
                return self.requeue(entry_id, reason)
            except StorageWriteFailure as e:
                attempts = entry.attempts + 1
                released = entry.copy(
                    status=EntryStatus.PENDING,
                    attempts=attempts,
                    last_error=reason,
                    next_attempt_at=self._clock() + self._backoff.delay(attempts),
                )
                self._entries[entry_id] = released
                logger.error("Could not persist release of %s: %s", entry, e)
                return released

    def fail(self, entry_id: str, reason: str) -> QueueEntry | None:
        """Mark an entry FAILED without retry (permanent rejection)."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            failed = self._save(entry.copy(
                status=EntryStatus.FAILED,
                attempts=entry.attempts + 1,
                last_error=reason,
            ))
        logger.error("Queue entry failed permanently: %s (%s)", failed, reason)
        return failed

    def retry(self, entry_id: str) -> QueueEntry | None:
        """Return a FAILED entry to PENDING with a fresh attempt budget."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != EntryStatus.FAILED:
                return None
            updated = self._save(entry.copy(
                status=EntryStatus.PENDING,
                attempts=0,
                next_attempt_at=0.0,
            ))
        logger.info("Retrying failed entry %s", entry_id)
        for callback in list(self._listeners):
            callback(updated)
        return updated

    def rebase(
        self,
        entry_id: str,
        remote_version: int,
        remote_exists: bool = True,
    ) -> QueueEntry | None:
        """Turn a conflicted IN_FLIGHT entry into a PENDING one on a new baseline.

        Args:
            entry_id: The entry whose push conflicted.
            remote_version: The server revision to layer the edit on.
            remote_exists: Whether the record exists remotely (an insert
                then becomes an update).

        The backend refused the push, so the entry is unsent again and a
        newer unsent edit of the entity is folded into it.

        Returns:
            The pending entry carrying the edit (None if the edits cancelled
            out).
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return None
            operation = entry.operation
            if operation == Operation.INSERT and remote_exists:
                operation = Operation.UPDATE
            rebased: QueueEntry | None = entry.copy(
                status=EntryStatus.PENDING,
                operation=operation,
                base_version=remote_version,
                next_attempt_at=0.0,
                sent=False,
            )
            newer = self._find_unsent(entry.key)
            if newer is not None:
                rebased = coalesce(rebased, newer)
            if rebased is None:
                self._drop(entry_id)
            else:
                self._save(rebased)
            if newer is not None:
                self._drop(newer.entry_id)
        logger.info("Rebased %s on remote version %d", rebased, remote_version)
        return rebased

    def rebase_pending(
        self,
        entity_type: EntityType,
        entity_id: str,
        remote_version: int,
    ) -> QueueEntry | None:
        """Move the pending entries of an entity onto a newer remote version.

        Returns:
            The newest pending entry, if any.
        """
        with self._lock:
            pending = [
                e for e in self._entries.values()
                if e.key == (entity_type, entity_id) and e.status == EntryStatus.PENDING
            ]
            newest = None
            for entry in sorted(pending, key=lambda e: e.enqueued_at):
                if entry.base_version != remote_version:
                    entry = self._save(entry.copy(base_version=remote_version))
                newest = entry
            return newest

    def discard_pending(self, entity_type: EntityType, entity_id: str) -> list[QueueEntry]:
        """Drop the pending entries of an entity."""
        with self._lock:
            dropped = [
                e for e in list(self._entries.values())
                if e.key == (entity_type, entity_id) and e.status == EntryStatus.PENDING
            ]
            for entry in dropped:
                self._drop(entry.entry_id)
        for entry in dropped:
            logger.info("Discarded %s", entry)
        return dropped

    # === Queries ===

    def get(self, entry_id: str) -> QueueEntry | None:
        """Get an entry by id."""
        with self._lock:
            return self._entries.get(entry_id)

    def outstanding(self, entity_type: EntityType, entity_id: str) -> list[QueueEntry]:
        """All entries (any status) of an entity, oldest first."""
        with self._lock:
            return sorted(
                (e for e in self._entries.values() if e.key == (entity_type, entity_id)),
                key=lambda e: e.enqueued_at,
            )

    def entries(self) -> list[QueueEntry]:
        """All entries, oldest first."""
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.enqueued_at)

    def failed_entries(self) -> list[QueueEntry]:
        """Entries awaiting user-triggered retry."""
        return [e for e in self.entries() if e.status == EntryStatus.FAILED]

    def next_due(
        self,
        user_id: str | None = None,
        skip: Callable[[QueueEntry], bool] | None = None,
    ) -> float | None:
        """Earliest ``next_attempt_at`` among entries drain() could hand out.

        Args:
            user_id: Only consider entries of this identity (as in drain()).
            skip: Predicate for entries held back (as in drain()).
        """
        with self._lock:
            times = [e.next_attempt_at for e in self._heads(user_id, skip)]
        return min(times) if times else None

    def stats(self) -> dict[str, int]:
        """Get queue statistics.

        Returns:
            Dictionary with entry counts by status
        """
        with self._lock:
            stats: dict[str, int] = {
                "total": len(self._entries),
                "pending": 0,
                "in_flight": 0,
                "failed": 0,
                "corrupt": self.corrupt_records,
            }
            for entry in self._entries.values():
                stats[entry.status.value] += 1
            return stats

    def __len__(self) -> int:
        """Get number of entries."""
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        """Iterate over entries in FIFO order."""
        return iter(self.entries())

    def __bool__(self) -> bool:
        """Check if queue has entries."""
        with self._lock:
            return bool(self._entries)
