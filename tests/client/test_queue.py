"""Tests for the durable sync queue."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, patch

import pytest

from layerssync.client.state import SQLiteLocalStore
from layerssync.client.sync.queue import SyncQueue, coalesce
from layerssync.client.sync.retry import BackoffPolicy
from layerssync.client.sync.types import QueueEntry, StorageWriteFailure
from layerssync.core.types import EntityType, EntryStatus, Operation

if TYPE_CHECKING:
    from conftest import FakeClock

DOC = EntityType.DOCUMENT


def make_entry(
    operation: Operation = Operation.UPDATE,
    entity_id: str = "doc-1",
    payload: dict[str, Any] | None = None,
    local_version: int = 1,
    base_version: int | None = None,
    user_id: str | None = "alice",
    enqueued_at: float | None = None,
) -> QueueEntry:
    """Create a queue entry for testing."""
    if payload is None and operation != Operation.DELETE:
        payload = {"title": "Draft"}
    return QueueEntry.create(
        DOC,
        entity_id,
        operation,
        payload,
        local_version=local_version,
        base_version=base_version,
        user_id=user_id,
        enqueued_at=enqueued_at,
    )


class TestCoalesce:
    """Tests for the coalescing rule."""

    def test_insert_then_update_stays_insert(self) -> None:
        """Fields of the update should be folded into the insert snapshot."""
        base = make_entry(Operation.INSERT, payload={"title": "A", "body": ""})
        merged = coalesce(base, make_entry(payload={"body": "text"}, local_version=2))

        assert merged is not None
        assert merged.operation == Operation.INSERT
        assert merged.payload == {"title": "A", "body": "text"}
        assert merged.local_version == 2
        assert merged.entry_id == base.entry_id

    def test_update_then_update_merges_fields(self) -> None:
        """Later fields should win and the original base version should be kept."""
        base = make_entry(payload={"title": "A", "body": "x"}, base_version=4)
        merged = coalesce(base, make_entry(payload={"title": "B"}, local_version=3, base_version=4))

        assert merged is not None
        assert merged.operation == Operation.UPDATE
        assert merged.payload == {"title": "B", "body": "x"}
        assert merged.base_version == 4

    def test_insert_then_delete_cancels(self) -> None:
        """An insert never sent should vanish with its delete."""
        base = make_entry(Operation.INSERT)
        assert coalesce(base, make_entry(Operation.DELETE, local_version=2)) is None

    def test_update_then_delete_becomes_delete(self) -> None:
        """The delete should replace the pending update."""
        merged = coalesce(make_entry(), make_entry(Operation.DELETE, local_version=2))

        assert merged is not None
        assert merged.operation == Operation.DELETE
        assert merged.payload is None
        assert merged.local_version == 2

    def test_delete_then_update_rejected(self) -> None:
        """An entity pending deletion cannot be updated."""
        with pytest.raises(ValueError, match="pending deletion"):
            coalesce(make_entry(Operation.DELETE), make_entry(local_version=2))

    def test_delete_then_insert_becomes_update(self) -> None:
        """Re-creating a deleted entity overwrites the remote record."""
        merged = coalesce(
            make_entry(Operation.DELETE),
            make_entry(Operation.INSERT, payload={"title": "Again"}, local_version=2),
        )

        assert merged is not None
        assert merged.operation == Operation.UPDATE
        assert merged.payload == {"title": "Again"}


class TestSyncQueueEnqueue:
    """Tests for SyncQueue.enqueue."""

    def test_enqueue_persists(self, store: SQLiteLocalStore, queue: SyncQueue) -> None:
        """An entry should survive a reload of the queue."""
        entry = queue.enqueue(make_entry(Operation.INSERT))

        reloaded = SyncQueue(store)
        assert entry is not None
        assert [e.entry_id for e in reloaded.entries()] == [entry.entry_id]
        assert reloaded.entries()[0].payload == {"title": "Draft"}

    def test_coalesces_into_pending_entry(self, queue: SyncQueue) -> None:
        """At most one pending entry should exist per entity."""
        first = queue.enqueue(make_entry(Operation.INSERT, payload={"title": "A"}))
        queue.enqueue(make_entry(payload={"body": "B"}, local_version=2))
        queue.enqueue(make_entry(payload={"title": "C"}, local_version=3))

        entries = queue.entries()
        assert len(entries) == 1
        assert first is not None
        assert entries[0].entry_id == first.entry_id
        assert entries[0].operation == Operation.INSERT
        assert entries[0].payload == {"title": "C", "body": "B"}
        assert entries[0].local_version == 3

    def test_distinct_entities_not_coalesced(self, queue: SyncQueue) -> None:
        """Entries of different entities should stay separate."""
        queue.enqueue(make_entry(entity_id="doc-1"))
        queue.enqueue(make_entry(entity_id="doc-2"))

        assert len(queue) == 2

    def test_in_flight_entry_not_mutated(self, queue: SyncQueue) -> None:
        """An edit made during a push should queue behind it."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [in_flight] = queue.drain(10)

        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))

        entries = queue.entries()
        assert len(entries) == 2
        assert queue.get(in_flight.entry_id).payload == {"title": "A"}
        assert entries[1].status == EntryStatus.PENDING
        assert entries[1].payload == {"title": "B"}

    def test_insert_then_delete_cancels(self, queue: SyncQueue) -> None:
        """Deleting an entity created offline should leave nothing to send."""
        queue.enqueue(make_entry(Operation.INSERT))
        result = queue.enqueue(make_entry(Operation.DELETE, local_version=2))

        assert result is None
        assert len(queue) == 0

    def test_delete_after_unacknowledged_insert_queued_behind(self, queue: SyncQueue) -> None:
        """A delete must not cancel an insert that may already be on the server."""
        queue.enqueue(make_entry(Operation.INSERT))
        [insert] = queue.drain(10)
        queue.requeue(insert.entry_id, "timeout")

        delete = queue.enqueue(make_entry(Operation.DELETE, local_version=2))

        assert delete is not None
        assert [(e.entry_id, e.operation) for e in queue.entries()] == [
            (insert.entry_id, Operation.INSERT),
            (delete.entry_id, Operation.DELETE),
        ]
        assert queue.get(insert.entry_id).sent
        assert not delete.sent

    def test_edits_behind_unacknowledged_push_coalesce(self, queue: SyncQueue) -> None:
        """Edits queued behind a sent entry should merge with each other only."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [sent] = queue.drain(10)
        queue.requeue(sent.entry_id, "timeout")

        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))
        queue.enqueue(make_entry(payload={"body": "C"}, local_version=3))

        first, second = queue.entries()
        assert first.entry_id == sent.entry_id
        assert first.payload == {"title": "A"}
        assert second.payload == {"title": "B", "body": "C"}
        assert second.local_version == 3

    def test_update_after_in_flight_delete_rejected(self, queue: SyncQueue) -> None:
        """An update behind an in-flight delete should be refused."""
        queue.enqueue(make_entry(Operation.DELETE))
        queue.drain(10)

        with pytest.raises(ValueError, match="pending deletion"):
            queue.enqueue(make_entry(local_version=2))
        assert len(queue) == 1

    def test_listener_called_and_removed(self, queue: SyncQueue) -> None:
        """Listeners should be told about each enqueue until unsubscribed."""
        listener = MagicMock()
        unsubscribe = queue.add_listener(listener)

        queue.enqueue(make_entry())
        unsubscribe()
        queue.enqueue(make_entry(local_version=2))

        listener.assert_called_once()

    def test_write_failure_leaves_queue_unchanged(
        self, store: SQLiteLocalStore, queue: SyncQueue
    ) -> None:
        """A failed durable write should be raised and not indexed."""
        with patch.object(store, "save_entry", side_effect=StorageWriteFailure("disk full")):
            with pytest.raises(StorageWriteFailure):
                queue.enqueue(make_entry())

        assert len(queue) == 0


class TestSyncQueueDrain:
    """Tests for SyncQueue.drain."""

    def test_fifo_order_and_limit(self, queue: SyncQueue) -> None:
        """Entries should be drained oldest first, up to the limit."""
        for i, at in enumerate((30.0, 10.0, 20.0)):
            queue.enqueue(make_entry(entity_id=f"doc-{i}", enqueued_at=at))

        batch = queue.drain(2)

        assert [e.entity_id for e in batch] == ["doc-1", "doc-2"]
        assert all(e.status == EntryStatus.IN_FLIGHT for e in batch)
        assert queue.stats()["pending"] == 1

    def test_entity_with_in_flight_entry_blocked(self, queue: SyncQueue) -> None:
        """A second entry of an entity waits for the first to settle."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [first] = queue.drain(10)
        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))

        assert queue.drain(10) == []

        queue.acknowledge(first.entry_id)
        [second] = queue.drain(10)
        assert second.payload == {"title": "B"}

    def test_entity_with_failed_entry_blocked(self, queue: SyncQueue) -> None:
        """Edits behind a failed entry should not overtake it."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [first] = queue.drain(10)
        queue.fail(first.entry_id, "rejected")
        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))

        assert queue.drain(10) == []

    def test_not_due_entries_skipped(self, queue: SyncQueue, clock: FakeClock) -> None:
        """Backed-off entries should wait for their next attempt time."""
        queue.enqueue(make_entry())
        [entry] = queue.drain(10)
        queue.requeue(entry.entry_id, "timeout")

        assert queue.drain(10) == []
        clock.advance(1.0)
        assert len(queue.drain(10)) == 1

    def test_backed_off_entry_blocks_later_edits(self, queue: SyncQueue, clock: FakeClock) -> None:
        """A newer edit must not overtake an entry waiting for its retry."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [first] = queue.drain(10)
        queue.requeue(first.entry_id, "timeout")
        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))

        assert queue.drain(10) == []

        clock.advance(1.0)
        [retried] = queue.drain(10)
        assert retried.entry_id == first.entry_id
        queue.acknowledge(retried.entry_id)
        [second] = queue.drain(10)
        assert second.payload == {"title": "B"}

    def test_drained_entries_marked_sent(self, queue: SyncQueue) -> None:
        """A drained entry may reach the backend and is flagged as such."""
        entry = queue.enqueue(make_entry())
        assert entry is not None and not entry.sent

        [drained] = queue.drain(10)

        assert drained.sent

    def test_scoped_to_user(self, queue: SyncQueue) -> None:
        """Entries of another identity stay queued; anonymous ones are claimed."""
        queue.enqueue(make_entry(entity_id="doc-bob", user_id="bob"))
        queue.enqueue(make_entry(entity_id="doc-anon", user_id=None))

        batch = queue.drain(10, user_id="alice")

        assert [e.entity_id for e in batch] == ["doc-anon"]
        assert batch[0].user_id == "alice"

    def test_skip_predicate(self, queue: SyncQueue) -> None:
        """Entries matched by the skip predicate should be held back."""
        queue.enqueue(make_entry(entity_id="doc-1"))
        queue.enqueue(make_entry(entity_id="doc-2"))

        batch = queue.drain(10, skip=lambda e: e.entity_id == "doc-1")

        assert [e.entity_id for e in batch] == ["doc-2"]


class TestSyncQueueRequeue:
    """Tests for retries and the attempt ceiling."""

    def test_backoff_grows_per_attempt(self, queue: SyncQueue, clock: FakeClock) -> None:
        """Each failed attempt should push the next attempt further out."""
        queue.enqueue(make_entry())
        delays = []
        for _ in range(3):
            [entry] = queue.drain(10)
            updated = queue.requeue(entry.entry_id, "503")
            delays.append(updated.next_attempt_at - clock())
            clock.advance(delays[-1])

        assert delays == [1.0, 2.0, 4.0]
        assert queue.entries()[0].attempts == 3
        assert queue.entries()[0].last_error == "503"

    def test_fails_at_attempt_ceiling(self, queue: SyncQueue, clock: FakeClock) -> None:
        """The entry should be marked failed once attempts reach the ceiling."""
        queue.enqueue(make_entry())
        for _ in range(queue.max_attempts):
            [entry] = queue.drain(10)
            updated = queue.requeue(entry.entry_id, "timeout")
            clock.advance(3600.0)

        assert updated.status == EntryStatus.FAILED
        assert updated.attempts == queue.max_attempts
        assert queue.failed_entries() == [updated]
        assert queue.drain(10) == []

    def test_requeue_keeps_newer_edit_behind(self, queue: SyncQueue) -> None:
        """A push with an unknown outcome is resent as-is, ahead of later edits."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [entry] = queue.drain(10)
        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2))

        queue.requeue(entry.entry_id, "timeout")

        first, second = queue.entries()
        assert first.entry_id == entry.entry_id
        assert first.payload == {"title": "A"}
        assert first.attempts == 1
        assert first.sent
        assert second.payload == {"title": "B"}
        assert second.status == EntryStatus.PENDING

    def test_release_returns_in_flight_entry(self, queue: SyncQueue, clock: FakeClock) -> None:
        """An entry whose outcome could not be recorded should be retried later."""
        queue.enqueue(make_entry())
        [entry] = queue.drain(10)

        released = queue.release(entry.entry_id, "store refused write")

        assert released.status == EntryStatus.PENDING
        assert released.attempts == 1
        assert released.next_attempt_at == clock() + 1.0
        assert queue.release(entry.entry_id, "again") == released

    def test_release_survives_write_failure(
        self, store: SQLiteLocalStore, queue: SyncQueue, clock: FakeClock
    ) -> None:
        """If the store refuses the write too, the entry is released in memory."""
        queue.enqueue(make_entry())
        [entry] = queue.drain(10)

        with patch.object(store, "save_entry", side_effect=StorageWriteFailure("disk full")):
            released = queue.release(entry.entry_id, "disk full")

        assert released.status == EntryStatus.PENDING
        assert queue.get(entry.entry_id) == released
        clock.advance(1.0)
        assert [e.entry_id for e in queue.drain(10)] == [entry.entry_id]

    def test_requeue_unknown_entry(self, queue: SyncQueue) -> None:
        """Requeueing an unknown id should be a no-op."""
        assert queue.requeue("missing", "timeout") is None

    def test_custom_ceiling(self, store: SQLiteLocalStore) -> None:
        """A ceiling of one should fail on the first transient error."""
        queue = SyncQueue(store, max_attempts=1, backoff=BackoffPolicy(rng=lambda: 0.0))
        queue.enqueue(make_entry())
        [entry] = queue.drain(10)

        assert queue.requeue(entry.entry_id, "timeout").status == EntryStatus.FAILED


class TestSyncQueueRecovery:
    """Tests for restart safety."""

    def test_in_flight_entries_reset_on_load(self, store: SQLiteLocalStore, queue: SyncQueue) -> None:
        """Entries interrupted mid-push should be delivered again."""
        queue.enqueue(make_entry())
        queue.drain(10)

        reloaded = SyncQueue(store)

        [entry] = reloaded.entries()
        assert entry.status == EntryStatus.PENDING
        assert len(reloaded.drain(10)) == 1

    def test_recover_keeps_newer_edit_behind(self, queue: SyncQueue) -> None:
        """A recovered entry stays sent and ahead of the edits made meanwhile."""
        queue.enqueue(make_entry(payload={"title": "A"}))
        [in_flight] = queue.drain(10)
        queue.enqueue(make_entry(payload={"body": "B"}, local_version=2))

        assert queue.recover() == 1

        first, second = queue.entries()
        assert first.entry_id == in_flight.entry_id
        assert first.status == EntryStatus.PENDING
        assert first.sent
        assert first.payload == {"title": "A"}
        assert second.payload == {"body": "B"}
        assert not second.sent

    def test_corrupt_records_skipped(self, store: SQLiteLocalStore) -> None:
        """A malformed record should be counted and skipped, not fatal."""
        good = make_entry(entity_id="doc-good")
        bad = make_entry(entity_id="doc-bad").to_record()
        bad["operation"] = "rename"
        store.save_entry(good.to_record())
        store.save_entry(bad)

        queue = SyncQueue(store)

        assert [e.entity_id for e in queue.entries()] == ["doc-good"]
        assert queue.corrupt_records == 1
        assert queue.stats()["corrupt"] == 1


class TestSyncQueueResolution:
    """Tests for retry, rebase and discard."""

    def test_retry_failed_entry(self, queue: SyncQueue) -> None:
        """A retried entry should be pending with a fresh attempt budget."""
        queue.enqueue(make_entry())
        [entry] = queue.drain(10)
        queue.fail(entry.entry_id, "rejected")

        retried = queue.retry(entry.entry_id)

        assert retried.status == EntryStatus.PENDING
        assert retried.attempts == 0
        assert queue.failed_entries() == []

    def test_retry_ignores_entries_not_failed(self, queue: SyncQueue) -> None:
        """Only failed entries can be retried."""
        entry = queue.enqueue(make_entry())

        assert queue.retry(entry.entry_id) is None
        assert queue.retry("missing") is None

    def test_rebase_insert_onto_existing_record(self, queue: SyncQueue) -> None:
        """A conflicting insert should become an update of the remote record."""
        queue.enqueue(make_entry(Operation.INSERT, payload={"title": "Mine"}))
        [entry] = queue.drain(10)

        rebased = queue.rebase(entry.entry_id, 7)

        assert rebased.operation == Operation.UPDATE
        assert rebased.base_version == 7
        assert rebased.status == EntryStatus.PENDING
        assert rebased.payload == {"title": "Mine"}

    def test_rebase_keeps_insert_when_remote_gone(self, queue: SyncQueue) -> None:
        """An insert rebased on a deleted record stays an insert."""
        queue.enqueue(make_entry(Operation.INSERT))
        [entry] = queue.drain(10)

        rebased = queue.rebase(entry.entry_id, 9, remote_exists=False)

        assert rebased.operation == Operation.INSERT
        assert rebased.base_version == 9

    def test_rebase_folds_newer_edit(self, queue: SyncQueue) -> None:
        """A refused push was not applied, so the edit behind it can merge in."""
        queue.enqueue(make_entry(Operation.INSERT, payload={"title": "Mine"}))
        [entry] = queue.drain(10)
        queue.enqueue(make_entry(payload={"body": "More"}, local_version=2))

        rebased = queue.rebase(entry.entry_id, 7)

        [only] = queue.entries()
        assert only == rebased
        assert only.entry_id == entry.entry_id
        assert only.operation == Operation.UPDATE
        assert only.payload == {"title": "Mine", "body": "More"}
        assert only.base_version == 7
        assert not only.sent

    def test_rebased_insert_cancelled_by_delete(self, queue: SyncQueue) -> None:
        """A refused insert followed by a delete leaves nothing to send."""
        queue.enqueue(make_entry(Operation.INSERT))
        [entry] = queue.drain(10)
        queue.enqueue(make_entry(Operation.DELETE, local_version=2))

        assert queue.rebase(entry.entry_id, 4, remote_exists=False) is None
        assert len(queue) == 0

    def test_rebase_pending(self, queue: SyncQueue) -> None:
        """The pending entry should move to the new base version."""
        queue.enqueue(make_entry(base_version=3))

        rebased = queue.rebase_pending(DOC, "doc-1", 5)

        assert rebased.base_version == 5
        assert queue.rebase_pending(DOC, "doc-2", 5) is None

    def test_rebase_pending_moves_every_pending_entry(self, queue: SyncQueue) -> None:
        """Both a sent entry and the edit behind it should move to the new base."""
        queue.enqueue(make_entry(payload={"title": "A"}, base_version=3))
        [sent] = queue.drain(10)
        queue.requeue(sent.entry_id, "timeout")
        queue.enqueue(make_entry(payload={"title": "B"}, local_version=2, base_version=3))

        newest = queue.rebase_pending(DOC, "doc-1", 5)

        assert newest.payload == {"title": "B"}
        assert [e.base_version for e in queue.entries()] == [5, 5]

    def test_discard_pending(self, queue: SyncQueue) -> None:
        """Discarding should drop pending entries of one entity only."""
        queue.enqueue(make_entry(entity_id="doc-1"))
        queue.enqueue(make_entry(entity_id="doc-2"))

        dropped = queue.discard_pending(DOC, "doc-1")

        assert [e.entity_id for e in dropped] == ["doc-1"]
        assert [e.entity_id for e in queue.entries()] == ["doc-2"]


class TestSyncQueueQueries:
    """Tests for queue statistics and scheduling queries."""

    def test_stats(self, queue: SyncQueue) -> None:
        """Stats should count entries by status."""
        queue.enqueue(make_entry(entity_id="doc-1"))
        queue.enqueue(make_entry(entity_id="doc-2"))
        queue.drain(1)

        stats = queue.stats()

        assert stats["total"] == 2
        assert stats["pending"] == 1
        assert stats["in_flight"] == 1
        assert stats["failed"] == 0

    def test_next_due(self, queue: SyncQueue, clock: FakeClock) -> None:
        """next_due should report the earliest pending attempt time."""
        assert queue.next_due() is None

        queue.enqueue(make_entry())
        [entry] = queue.drain(10)
        queue.requeue(entry.entry_id, "timeout")

        assert queue.next_due() == clock() + 1.0

    def test_next_due_only_counts_drainable_entries(
        self, queue: SyncQueue, clock: FakeClock
    ) -> None:
        """Held entries, other identities and entries behind others are ignored."""
        queue.enqueue(make_entry(entity_id="doc-held"))
        queue.enqueue(make_entry(entity_id="doc-bob", user_id="bob"))
        queue.enqueue(make_entry(entity_id="doc-1"))
        [entry] = queue.drain(10, skip=lambda e: e.entity_id != "doc-1")
        queue.requeue(entry.entry_id, "timeout")
        queue.enqueue(make_entry(entity_id="doc-1", local_version=2))

        due = queue.next_due(user_id="alice", skip=lambda e: e.entity_id == "doc-held")

        assert due == clock() + 1.0
        assert queue.next_due(user_id="alice") == 0.0

    def test_dunder_methods(self, queue: SyncQueue) -> None:
        """len, bool and iteration should reflect the entries."""
        assert not queue
        queue.enqueue(make_entry())

        assert queue
        assert len(queue) == 1
        assert [e.entity_id for e in queue] == ["doc-1"]
