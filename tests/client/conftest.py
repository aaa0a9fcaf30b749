"""Shared fixtures for sync client tests.

FakeBackend follows the backend contract: one global revision counter,
a revision never lower than the pushed local version, conflict answers
carrying the server copy and pushes deduplicated by entity and version. It can
also drop the answer of an applied push, as a connection reset would.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from layerssync.client.auth import Identity, IdentityProvider
from layerssync.client.notifications import RecordingNotifier
from layerssync.client.state import SQLiteLocalStore
from layerssync.client.sync.network import NetworkMonitor
from layerssync.client.sync.provider import SyncProvider
from layerssync.client.sync.queue import SyncQueue
from layerssync.client.sync.retry import BackoffPolicy
from layerssync.client.sync.types import (
    ConflictDetected,
    EntityKey,
    PermanentRejection,
    PullResult,
    PushResult,
    QueueEntry,
    RemoteChange,
    TransientNetworkFailure,
)
from layerssync.core.config import SyncConfig
from layerssync.core.types import EntityType, Operation


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory backend holding one record per entity."""

    def __init__(self) -> None:
        self.revision = 0
        self.records: dict[EntityKey, RemoteChange] = {}
        self.pushes: list[QueueEntry] = []
        self.pulls: list[int] = []
        self.failures: list[Exception] = []
        self.pull_failures: list[Exception] = []
        self.rejected: set[EntityKey] = set()
        # Pushes applied whose answer is then lost on the way back
        self.lost_acks = 0
        self.send_snapshot = True
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0
        self._applied: dict[tuple[EntityKey, int], PushResult] = {}

    def _next_revision(self, at_least: int = 0) -> int:
        self.revision = max(self.revision + 1, at_least)
        return self.revision

    def remote_edit(
        self,
        entity_type: EntityType,
        entity_id: str,
        content: dict[str, Any] | None = None,
        deleted: bool = False,
    ) -> RemoteChange:
        """Change a record as another device would."""
        change = RemoteChange(
            entity_type=entity_type,
            entity_id=entity_id,
            remote_version=self._next_revision(),
            content=None if deleted else dict(content or {}),
            deleted=deleted,
        )
        self.records[change.key] = change
        return change

    def content(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        record = self.records.get((entity_type, entity_id))
        if record is None or record.deleted:
            return None
        return record.content

    async def push(self, entry: QueueEntry, identity: Identity) -> PushResult:
        self.pushes.append(entry)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.failures:
                raise self.failures.pop(0)
            if entry.key in self.rejected:
                raise PermanentRejection("Validation failed", status_code=422)
            result = self._apply(entry)
            if self.lost_acks:
                self.lost_acks -= 1
                raise TransientNetworkFailure("Connection reset after write")
            return result
        finally:
            self.active -= 1

    def _apply(self, entry: QueueEntry) -> PushResult:
        dedup_key = (entry.key, entry.local_version)
        if dedup_key in self._applied:
            return self._applied[dedup_key]

        current = self.records.get(entry.key)
        if entry.operation == Operation.INSERT:
            conflict = current is not None and not current.deleted
        else:
            conflict = current is not None and current.remote_version > (entry.base_version or 0)
        if conflict and current is not None:
            raise ConflictDetected(
                current.remote_version,
                snapshot=current if self.send_snapshot else None,
            )

        if entry.operation == Operation.DELETE:
            content = None
        elif entry.operation == Operation.UPDATE and current is not None and current.content:
            content = dict(current.content)
            content.update(entry.payload or {})
        else:
            content = dict(entry.payload or {})

        record = RemoteChange(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            remote_version=self._next_revision(entry.local_version),
            content=content,
            deleted=entry.operation == Operation.DELETE,
        )
        self.records[entry.key] = record
        result = PushResult(record.remote_version, content)
        self._applied[dedup_key] = result
        return result

    async def pull(self, since: int, identity: Identity) -> PullResult:
        self.pulls.append(since)
        if self.pull_failures:
            raise self.pull_failures.pop(0)
        changes = sorted(
            (r for r in self.records.values() if r.remote_version > since),
            key=lambda r: r.remote_version,
        )
        return PullResult(changes=changes, has_more=False)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteLocalStore]:
    """Create a local store in a temporary directory."""
    store = SQLiteLocalStore(tmp_path / "layers.db")
    yield store
    store.close()


@pytest.fixture
def queue(store: SQLiteLocalStore, clock: FakeClock) -> SyncQueue:
    """Create a queue with jitter-free backoff."""
    return SyncQueue(store, max_attempts=5, backoff=BackoffPolicy(rng=lambda: 0.0), clock=clock)


@pytest.fixture
def backend() -> FakeBackend:
    """Create an in-memory backend."""
    return FakeBackend()


@pytest.fixture
def network() -> NetworkMonitor:
    """Create a network monitor that starts online."""
    return NetworkMonitor(online=True)


@pytest.fixture
def identity() -> IdentityProvider:
    """Create an identity provider signed in as alice."""
    return IdentityProvider(Identity(user_id="alice", access_token="token-a"))


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a notifier that records notifications."""
    return RecordingNotifier()


@pytest.fixture
def provider(
    store: SQLiteLocalStore,
    queue: SyncQueue,
    backend: FakeBackend,
    network: NetworkMonitor,
    identity: IdentityProvider,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> SyncProvider:
    """Create a provider wired to the fakes."""
    return SyncProvider(
        store,
        queue,
        backend,
        network,
        identity,
        config=SyncConfig(sync_interval=3600.0, max_concurrent=2, data_dir=Path("unused")),
        notifier=notifier,
        clock=clock,
    )
