"""Sync provider: reconciles the local store with the remote backend.

This module provides:
- SyncProvider: Local mutation API, drive loop, pull path and conflict handling
- Trigger: Signals fed to the coordinator task

The provider runs one coordinator task reading from one signal channel.
Enqueue, reconnect, identity, timer and pull requests all post a Trigger,
and a backed-off entry falling due wakes it too. The coordinator drains the
queue in bounded batches while online and signed in, then pulls remote
changes (except after an enqueue or a retry). Pushes of distinct entities run
concurrently (bounded by ``max_concurrent``); the queue never hands out two
entries of one entity, so edits of one entity reach the backend in order.

Outcome of a push:
    | Backend answer          | Queue                     | Entity                      |
    |-------------------------|---------------------------|-----------------------------|
    | PushResult(R)           | acknowledge               | remote_version=R, synced    |
    |                         |                           | once nothing is outstanding |
    | ConflictDetected(R)     | rebase onto R, held       | remote snapshot, conflicted |
    | TransientNetworkFailure | requeue with backoff      | unchanged                   |
    | PermanentRejection      | failed                    | unchanged (surfaced)        |

Pulled changes go through the same merge as conflict snapshots: a change
for an entity without outstanding local edits is applied as-is, one for an
entity with outstanding edits marks it conflicted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from layerssync.client.sync.types import (
    ConflictDetected,
    PermanentRejection,
    ProviderStats,
    PushResult,
    QueueEntry,
    RemoteChange,
    SyncedEntity,
    TransientNetworkFailure,
    Unsubscribe,
)
from layerssync.core.config import SyncConfig
from layerssync.core.types import (
    EntitySyncState,
    EntityType,
    EntryStatus,
    Operation,
    SyncState,
)

if TYPE_CHECKING:
    from layerssync.client.api import RemoteBackend
    from layerssync.client.auth import Identity, IdentityProvider
    from layerssync.client.notifications import Notifier
    from layerssync.client.state import LocalStore
    from layerssync.client.sync.network import NetworkMonitor
    from layerssync.client.sync.queue import SyncQueue

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    """Reason the coordinator was woken."""

    STARTUP = "startup"
    ENQUEUE = "enqueue"
    RECONNECT = "reconnect"
    IDENTITY = "identity"
    TIMER = "timer"
    RETRY = "retry"
    PULL = "pull"


# Triggers after which remote changes are fetched too
_PULL_TRIGGERS = frozenset({
    Trigger.STARTUP,
    Trigger.RECONNECT,
    Trigger.IDENTITY,
    Trigger.TIMER,
    Trigger.PULL,
})


class SyncProvider:
    """Reconciliation engine between the local store and the backend.

    Usage:
        provider = SyncProvider(store, queue, backend, network, identity)
        await provider.start()

        provider.create(EntityType.DOCUMENT, doc_id, {"title": "Notes"})
        provider.update(EntityType.DOCUMENT, doc_id, {"body": "..."})

        await provider.stop()
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        backend: RemoteBackend,
        network: NetworkMonitor,
        identity: IdentityProvider,
        config: SyncConfig | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the provider.

        Args:
            store: Local store holding the entity mirror.
            queue: Durable queue of pending mutations.
            backend: Remote backend collaborator.
            network: Connectivity monitor.
            identity: Source of the signed-in identity.
            config: Tuning (batch size, concurrency, timer interval).
            notifier: Where conflicts and failures are surfaced.
            clock: Time source, shared with the queue.
        """
        self._store = store
        self._queue = queue
        self._backend = backend
        self._network = network
        self._identity = identity
        self._config = config or SyncConfig()
        self._notifier = notifier
        self._clock = clock

        self._stats = ProviderStats()
        self._run_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent)
        self._syncing = False

        # Coordinator
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signals: asyncio.Queue[Trigger] | None = None
        self._task: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._subscriptions: list[Unsubscribe] = []
        self._deliveries: set[asyncio.Future[Any]] = set()

    @property
    def stats(self) -> ProviderStats:
        """Get provider statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Whether the coordinator task is running."""
        return self._task is not None and not self._task.done()

    def status(self) -> SyncState:
        """Overall sync state for status indicators."""
        if self._identity.identity is None:
            return SyncState.SUSPENDED
        if not self._network.is_online:
            return SyncState.OFFLINE
        if self._syncing:
            return SyncState.SYNCING
        if self._queue.failed_entries() or self._store.list_conflicted():
            return SyncState.ERROR
        return SyncState.IDLE

    # === Local mutations ===

    def create(
        self,
        entity_type: EntityType,
        entity_id: str,
        content: dict[str, Any],
    ) -> SyncedEntity:
        """Create an entity locally and queue its insert.

        Raises:
            ValueError: If the entity already exists.
            StorageWriteFailure: If the change could not be persisted.
        """
        existing = self._store.get(entity_type, entity_id)
        if existing is not None and not existing.deleted:
            raise ValueError(f"{entity_type.value}/{entity_id} already exists")

        version = self._store.increment_local_version(entity_type, entity_id)
        self._queue.enqueue(QueueEntry.create(
            entity_type,
            entity_id,
            Operation.INSERT,
            content,
            local_version=version,
            user_id=self._identity.user_id,
        ))
        entity = SyncedEntity(
            entity_type=entity_type,
            id=entity_id,
            content=dict(content),
            remote_version=existing.remote_version if existing else 0,
            local_version=version,
            updated_at=self._clock(),
            sync_state=self._local_state(existing),
        )
        self._store.put(entity)
        return entity

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        changes: dict[str, Any],
    ) -> SyncedEntity:
        """Apply changed fields locally and queue the update.

        Raises:
            KeyError: If the entity does not exist or is deleted.
            StorageWriteFailure: If the change could not be persisted.
        """
        entity = self._require(entity_type, entity_id)
        version = self._store.increment_local_version(entity_type, entity_id)
        self._queue.enqueue(QueueEntry.create(
            entity_type,
            entity_id,
            Operation.UPDATE,
            changes,
            local_version=version,
            base_version=entity.remote_version,
            user_id=self._identity.user_id,
        ))
        content = dict(entity.content)
        content.update(changes)
        updated = entity.copy(
            content=content,
            local_version=version,
            updated_at=self._clock(),
            sync_state=self._local_state(entity),
        )
        self._store.put(updated)
        return updated

    def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Delete an entity locally and queue the delete.

        The entity is kept as a tombstone until the delete is acknowledged.

        Raises:
            KeyError: If the entity does not exist or is already deleted.
            StorageWriteFailure: If the change could not be persisted.
        """
        entity = self._require(entity_type, entity_id)
        version = self._store.increment_local_version(entity_type, entity_id)
        stored = self._queue.enqueue(QueueEntry.create(
            entity_type,
            entity_id,
            Operation.DELETE,
            None,
            local_version=version,
            base_version=entity.remote_version,
            user_id=self._identity.user_id,
        ))
        if stored is None and not self._queue.outstanding(entity_type, entity_id):
            # The insert never left the device
            self._store.delete(entity_type, entity_id)
            return
        self._store.put(entity.copy(
            deleted=True,
            local_version=version,
            updated_at=self._clock(),
            sync_state=self._local_state(entity),
        ))

    def get(self, entity_type: EntityType, entity_id: str) -> SyncedEntity | None:
        """Read an entity as the UI sees it (tombstones hidden)."""
        entity = self._store.get(entity_type, entity_id)
        if entity is None or entity.deleted:
            return None
        return entity

    def _require(self, entity_type: EntityType, entity_id: str) -> SyncedEntity:
        entity = self._store.get(entity_type, entity_id)
        if entity is None or entity.deleted:
            raise KeyError(f"{entity_type.value}/{entity_id}")
        return entity

    @staticmethod
    def _local_state(entity: SyncedEntity | None) -> EntitySyncState:
        if entity is not None and entity.sync_state == EntitySyncState.CONFLICTED:
            return EntitySyncState.CONFLICTED
        return EntitySyncState.PENDING_LOCAL_CHANGES

    # === Lifecycle ===

    async def start(self) -> None:
        """Subscribe to triggers and start the coordinator task."""
        if self.is_running:
            logger.warning("Sync provider already running")
            return

        self._loop = asyncio.get_running_loop()
        self._signals = asyncio.Queue()
        self._subscriptions = [
            self._queue.add_listener(self._on_enqueued),
            self._network.on_online_status_change(self._on_online_change),
            self._identity.on_identity_change(self._on_identity_change),
        ]
        self._task = asyncio.create_task(self._run(), name="SyncProvider")
        self._timer = asyncio.create_task(self._timer_loop(), name="SyncProviderTimer")
        self._signal(Trigger.STARTUP)
        logger.info("Sync provider started")

    async def stop(self) -> None:
        """Stop the coordinator.

        Pushes interrupted by the stop are returned to the queue as pending.
        """
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

        for task in (self._timer, self._task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._task = None
        self._timer = None
        self._loop = None
        self._signals = None

        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)

        recovered = self._queue.recover()
        if recovered:
            logger.info("Returned %d interrupted entries to the queue", recovered)
        logger.info("Sync provider stopped")

    def _signal(self, trigger: Trigger) -> None:
        """Post a trigger to the coordinator (safe from any thread)."""
        loop, signals = self._loop, self._signals
        if loop is None or signals is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            signals.put_nowait(trigger)
        else:
            loop.call_soon_threadsafe(signals.put_nowait, trigger)

    def request_pull(self) -> None:
        """Ask the coordinator to fetch remote changes."""
        self._signal(Trigger.PULL)

    def _on_enqueued(self, entry: QueueEntry) -> None:
        if self._can_dispatch():
            self._signal(Trigger.ENQUEUE)

    def _on_online_change(self, online: bool) -> None:
        if online:
            logger.info("Back online, resuming sync")
            self._signal(Trigger.RECONNECT)
        else:
            logger.info("Offline, sync suspended")

    def _on_identity_change(self, identity: Identity | None) -> None:
        if identity is not None:
            self._signal(Trigger.IDENTITY)

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sync_interval)
            self._signal(Trigger.TIMER)

    def _wait_timeout(self) -> float | None:
        """Time until the next entry this identity can push falls due.

        Entries of other identities and of conflicted entities do not count;
        None means only a trigger can make progress.
        """
        identity = self._identity.identity
        if identity is None or not self._network.is_online:
            return None
        due = self._queue.next_due(user_id=identity.user_id, skip=self._is_held)
        if due is None:
            return None
        return max(due - self._clock(), 0.0)

    async def _run(self) -> None:
        """Main coordinator loop."""
        signals = self._signals
        if signals is None:
            return
        logger.debug("Sync coordinator loop started")

        failed = False
        while True:
            # After a failed pass only a trigger or the timer wakes the loop
            timeout = None if failed else self._wait_timeout()
            try:
                trigger = await asyncio.wait_for(signals.get(), timeout)
            except asyncio.TimeoutError:
                trigger = Trigger.RETRY

            triggers = {trigger}
            while not signals.empty():
                triggers.add(signals.get_nowait())
            logger.debug("Coordinator woken by %s", ", ".join(sorted(t.value for t in triggers)))

            failed = False
            try:
                await self._drive()
                if triggers & _PULL_TRIGGERS:
                    await self.pull()
                    # Pulled changes may have released held entries
                    await self._drive()
            except Exception:
                logger.exception("Error in sync loop")
                self._stats.errors += 1
                failed = True

    # === Drive loop ===

    def _can_dispatch(self) -> bool:
        return self._network.is_online and self._identity.identity is not None

    def _is_held(self, entry: QueueEntry) -> bool:
        entity = self._store.get(entry.entity_type, entry.entity_id)
        return entity is not None and entity.sync_state == EntitySyncState.CONFLICTED

    async def sync_once(self, pull: bool = True) -> int:
        """Drive the queue until nothing is due, then pull.

        Returns:
            Number of pushes made.
        """
        pushed = await self._drive()
        if pull:
            await self.pull()
        return pushed

    async def _drive(self) -> int:
        """Drain and dispatch batches while online and signed in."""
        pushed = 0
        async with self._run_lock:
            while self._can_dispatch():
                identity = self._identity.identity
                if identity is None:
                    break
                batch = self._queue.drain(
                    self._config.batch_size,
                    user_id=identity.user_id,
                    skip=self._is_held,
                )
                if not batch:
                    break
                self._syncing = True
                try:
                    await asyncio.gather(*(self._dispatch(e, identity) for e in batch))
                finally:
                    self._syncing = False
                pushed += len(batch)
        return pushed

    async def _dispatch(self, entry: QueueEntry, identity: Identity) -> None:
        """Push one entry and apply the outcome.

        If the outcome cannot be recorded (e.g. the local store refuses a
        write), the entry is released back to the queue with backoff instead
        of staying IN_FLIGHT until the next restart.
        """
        async with self._semaphore:
            self._stats.pushed += 1
            logger.debug("Pushing %s", entry)
            try:
                await self._push(entry, identity)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Could not record the outcome of pushing %s", entry)
                self._stats.errors += 1
                self._queue.release(entry.entry_id, f"Unexpected error: {e}")

    async def _push(self, entry: QueueEntry, identity: Identity) -> None:
        try:
            result = await self._backend.push(entry, identity)
        except ConflictDetected as e:
            self._on_conflict(entry, e)
        except TransientNetworkFailure as e:
            self._on_transient(entry, str(e))
        except PermanentRejection as e:
            self._on_rejected(entry, str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected error pushing %s", entry)
            self._stats.errors += 1
            self._on_transient(entry, f"Unexpected error: {e}")
        else:
            self._on_pushed(entry, result)

    def _on_pushed(self, entry: QueueEntry, result: PushResult) -> None:
        """Apply the canonical revision and acknowledge the entry."""
        key = entry.key
        remote_version = result.remote_version
        remaining = [e for e in self._queue.outstanding(*key) if e.entry_id != entry.entry_id]
        entity = self._store.get(*key)

        if entity is not None:
            if entry.operation == Operation.DELETE and not remaining:
                self._store.delete(*key)
                entity = None
            else:
                entity = entity.copy(remote_version=max(entity.remote_version, remote_version))
                if not remaining and not entity.deleted:
                    if result.content is not None:
                        entity.content = dict(result.content)
                    if entity.sync_state != EntitySyncState.CONFLICTED:
                        entity.sync_state = EntitySyncState.SYNCED
                        entity.local_version = max(entity.local_version, remote_version)
                self._store.put(entity)

        self._queue.acknowledge(entry.entry_id)
        self._queue.rebase_pending(entry.entity_type, entry.entity_id, remote_version)
        self._stats.acknowledged += 1
        logger.info(
            "Synced %s %s/%s at revision %d",
            entry.operation.value,
            entry.entity_type.value,
            entry.entity_id,
            remote_version,
        )

    def _on_conflict(self, entry: QueueEntry, error: ConflictDetected) -> None:
        """Keep the local edit on top of the server's newer revision."""
        self._stats.conflicts += 1
        logger.warning(
            "Conflict on %s/%s: edit based on %s, server at %d",
            entry.entity_type.value,
            entry.entity_id,
            entry.base_version,
            error.remote_version,
        )
        if error.snapshot is not None:
            self._adopt_remote(error.snapshot, in_flight=entry)
            return

        # No snapshot in the answer: hold the edit and fetch the record
        self._queue.rebase(entry.entry_id, error.remote_version)
        entity = self._store.get(*entry.key)
        if entity is not None:
            self._store.put(entity.copy(sync_state=EntitySyncState.CONFLICTED))
        self._notify_conflict(entry.entity_type, entry.entity_id)
        self.request_pull()

    def _on_transient(self, entry: QueueEntry, reason: str) -> None:
        updated = self._queue.requeue(entry.entry_id, reason)
        if updated is not None and updated.status == EntryStatus.FAILED:
            self._stats.failures += 1
            self._notify_failed(entry, reason)
        else:
            self._stats.retries += 1

    def _on_rejected(self, entry: QueueEntry, reason: str) -> None:
        self._queue.fail(entry.entry_id, reason)
        self._stats.failures += 1
        self._notify_failed(entry, reason)

    def _notify_failed(self, entry: QueueEntry, reason: str) -> None:
        if self._notifier is not None:
            self._deliver(self._notifier.notify_failed, entry.entity_type, entry.entity_id, reason)

    def _notify_conflict(self, entity_type: EntityType, entity_id: str) -> None:
        if self._notifier is not None:
            self._deliver(self._notifier.notify_conflict, entity_type, entity_id)

    def _deliver(self, send: Callable[..., bool], *args: Any) -> None:
        """Show a notification, on a worker thread if the notifier blocks."""
        notifier = self._notifier
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if notifier is None or not notifier.blocking or loop is None:
            send(*args)
            return
        future = loop.run_in_executor(None, send, *args)
        self._deliveries.add(future)
        future.add_done_callback(self._delivered)

    def _delivered(self, future: asyncio.Future[Any]) -> None:
        self._deliveries.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Notification failed: %s", future.exception())

    # === Pull path ===

    async def pull(self) -> int:
        """Fetch and merge remote changes newer than the identity's pull cursor.

        Returns:
            Number of changes applied.
        """
        identity = self._identity.identity
        if identity is None or not self._network.is_online:
            return 0

        applied = 0
        async with self._run_lock:
            while True:
                since = self._store.get_pull_cursor(identity.user_id)
                try:
                    result = await self._backend.pull(since, identity)
                except TransientNetworkFailure as e:
                    logger.warning("Pull failed, will retry: %s", e)
                    break
                except PermanentRejection as e:
                    logger.error("Pull rejected: %s", e)
                    self._stats.errors += 1
                    break

                for change in result.changes:
                    if self._adopt_remote(change):
                        applied += 1
                if not result.changes:
                    break
                cursor = max(since, *(c.remote_version for c in result.changes))
                self._store.set_pull_cursor(cursor, identity.user_id)
                if not result.has_more:
                    break

        if applied:
            self._stats.pulled += applied
            logger.info("Pulled %d remote changes", applied)
        return applied

    def _adopt_remote(self, change: RemoteChange, in_flight: QueueEntry | None = None) -> bool:
        """Merge a server copy of a record into the local store.

        Without outstanding local edits the server copy replaces the local
        one. With outstanding edits the server copy is stored, the entity is
        marked conflicted and the edits are rebased onto its revision.

        Args:
            change: Server copy of the record.
            in_flight: The entry whose push returned this copy as a conflict.

        Returns:
            True if local state changed.
        """
        key = change.key
        entity = self._store.get(*key)
        if (
            in_flight is None
            and entity is not None
            and change.remote_version <= entity.remote_version
        ):
            return False

        outstanding = self._queue.outstanding(*key)
        if not outstanding:
            self._apply_clean(change, entity)
            return True

        if change.deleted and outstanding[-1].operation == Operation.DELETE:
            # Deleted on both sides
            for e in outstanding:
                self._queue.acknowledge(e.entry_id)
            self._store.delete(*key)
            logger.info("%s/%s deleted on both sides", change.entity_type.value, change.entity_id)
            return True

        if entity is None:
            entity = SyncedEntity(
                entity_type=change.entity_type,
                id=change.entity_id,
                content={},
                local_version=max(e.local_version for e in outstanding),
            )
        if change.deleted:
            entity = entity.copy(remote_deleted=True)
        else:
            entity = entity.copy(content=dict(change.content or {}), remote_deleted=False)
        entity.remote_version = max(entity.remote_version, change.remote_version)
        entity.sync_state = EntitySyncState.CONFLICTED
        self._store.put(entity)

        if in_flight is not None:
            self._queue.rebase(
                in_flight.entry_id,
                change.remote_version,
                remote_exists=not change.deleted,
            )
        self._queue.rebase_pending(change.entity_type, change.entity_id, change.remote_version)
        if in_flight is None:
            self._stats.conflicts += 1
            logger.warning(
                "Remote change to %s/%s conflicts with local edits",
                change.entity_type.value,
                change.entity_id,
            )
        self._notify_conflict(change.entity_type, change.entity_id)
        return True

    def _apply_clean(self, change: RemoteChange, entity: SyncedEntity | None) -> None:
        key = change.key
        if change.deleted:
            if entity is not None:
                self._store.delete(*key)
                logger.debug(
                    "Removed %s/%s deleted remotely",
                    change.entity_type.value,
                    change.entity_id,
                )
            return
        self._store.put(SyncedEntity(
            entity_type=change.entity_type,
            id=change.entity_id,
            content=dict(change.content or {}),
            remote_version=change.remote_version,
            local_version=max(entity.local_version if entity else 0, change.remote_version),
            updated_at=self._clock(),
            sync_state=EntitySyncState.SYNCED,
        ))

    # === Resolution affordances ===

    def resolve_conflict(
        self,
        entity_type: EntityType,
        entity_id: str,
        keep: str,
    ) -> SyncedEntity | None:
        """Settle a conflicted entity.

        Args:
            entity_type: Kind of the conflicted record.
            entity_id: Its id.
            keep: "local" releases the preserved edit on top of the server
                copy; "remote" discards it.

        Returns:
            The entity after resolution (None if it no longer exists).

        Raises:
            KeyError: If the entity does not exist.
            ValueError: If it is not conflicted or ``keep`` is invalid.
        """
        if keep not in ("local", "remote"):
            raise ValueError(f"keep must be 'local' or 'remote', not {keep!r}")
        entity = self._store.get(entity_type, entity_id)
        if entity is None:
            raise KeyError(f"{entity_type.value}/{entity_id}")
        if entity.sync_state != EntitySyncState.CONFLICTED:
            raise ValueError(f"{entity_type.value}/{entity_id} is not conflicted")

        waiting = [
            e for e in self._queue.outstanding(entity_type, entity_id)
            if e.status != EntryStatus.IN_FLIGHT
        ]
        if keep == "remote":
            result = self._keep_remote(entity, waiting)
        else:
            result = self._keep_local(entity, waiting)
        logger.info("Resolved conflict on %s/%s keeping %s", entity_type.value, entity_id, keep)
        self._signal(Trigger.ENQUEUE)
        return result

    def _keep_remote(self, entity: SyncedEntity, waiting: list[QueueEntry]) -> SyncedEntity | None:
        for e in waiting:
            self._queue.acknowledge(e.entry_id)
        if entity.remote_deleted:
            self._store.delete(entity.entity_type, entity.id)
            return None
        resolved = entity.copy(
            sync_state=EntitySyncState.SYNCED,
            local_version=max(entity.local_version, entity.remote_version),
            deleted=False,
        )
        self._store.put(resolved)
        return resolved

    def _keep_local(self, entity: SyncedEntity, waiting: list[QueueEntry]) -> SyncedEntity | None:
        content = dict(entity.content)
        for e in waiting:
            if e.payload:
                content.update(e.payload)

        if entity.remote_deleted:
            if waiting and waiting[-1].operation == Operation.DELETE:
                for e in waiting:
                    self._queue.acknowledge(e.entry_id)
                self._store.delete(entity.entity_type, entity.id)
                return None
            # Gone remotely: send the whole local copy again as a new record
            for e in waiting:
                self._queue.acknowledge(e.entry_id)
            version = self._store.increment_local_version(entity.entity_type, entity.id)
            self._queue.enqueue(QueueEntry.create(
                entity.entity_type,
                entity.id,
                Operation.INSERT,
                content,
                local_version=version,
                user_id=self._identity.user_id,
            ))
            entity = entity.copy(local_version=version, remote_deleted=False)

        state = (
            EntitySyncState.PENDING_LOCAL_CHANGES
            if self._queue.outstanding(entity.entity_type, entity.id)
            else EntitySyncState.SYNCED
        )
        resolved = entity.copy(content=content, sync_state=state, updated_at=self._clock())
        self._store.put(resolved)
        return resolved

    def retry_failed(self, entry_id: str) -> QueueEntry | None:
        """Give a failed entry a fresh attempt budget.

        Returns:
            The pending entry, or None if ``entry_id`` is not a failed entry.
        """
        return self._queue.retry(entry_id)
