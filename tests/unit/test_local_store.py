# =============================================================================
# tests/unit/test_local_store.py
# Unit Tests for LocalStore
# =============================================================================

import pytest

from reva_core.errors import EntityNotFoundError, LocalStoreError, OutboxEntryNotFoundError
from reva_core.offline import (
    ChangeEvent,
    ChangeType,
    DeadLetterReason,
    EntityState,
    MergeResult,
    MutationOperation,
    OutboxEntry,
    OutboxStatus,
    LocalStore,
)


def make_entry(key, table="tasks", entity_id="t1", operation=MutationOperation.UPDATE, payload=None):
    return OutboxEntry(
        idempotency_key=key,
        entity_type=table,
        entity_id=entity_id,
        operation=operation,
        payload=payload or {},
    )


def remote_event(change_type, record, revision, table="tasks", old_record=None):
    return ChangeEvent(
        table=table,
        change_type=change_type,
        record=record,
        old_record=old_record or {},
        revision=revision,
    )


def seed_synced(store, entity_id="t1", revision="5", **fields):
    record = {"id": entity_id, "title": "Buy milk", "updated_at": revision, **fields}
    assert store.merge_remote(remote_event(ChangeType.INSERT, record, revision)) == MergeResult.APPLIED
    return record


class TestLocalWrites:
    """Optimistic user edits"""

    def test_create_marks_entity_pending(self, store):
        entity = store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "Buy milk"})

        assert entity.state == EntityState.PENDING
        assert entity.payload == {"title": "Buy milk", "id": "t1"}
        assert store.get_entity("tasks", "t1").state == EntityState.PENDING

    def test_create_existing_entity_fails(self, store):
        store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})

        with pytest.raises(LocalStoreError):
            store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "b"})

    def test_update_merges_fields(self, store):
        seed_synced(store, done=False)

        entity = store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"done": True})

        assert entity.payload["done"] is True
        assert entity.payload["title"] == "Buy milk"
        assert entity.revision == "5"

    def test_update_missing_entity_raises(self, store):
        with pytest.raises(EntityNotFoundError):
            store.apply_local_write("tasks", "nope", MutationOperation.UPDATE, {"done": True})

    def test_delete_hides_entity_until_acknowledged(self, store):
        seed_synced(store)

        store.apply_local_write("tasks", "t1", MutationOperation.DELETE, {})

        assert store.get_entity("tasks", "t1") is None
        assert store.get_entity("tasks", "t1", include_deleted=True).deleted
        assert store.list_entities("tasks") == []

    def test_failed_transaction_rolls_back_write_and_outbox(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})
                store.append_outbox(make_entry("k1", operation=MutationOperation.CREATE))
                raise RuntimeError("boom")

        assert store.get_entity("tasks", "t1") is None
        assert store.pending_count() == 0


class TestRemoteMerge:
    """Revision-based merge of remote change events"""

    def test_insert_of_unknown_entity_is_applied(self, store):
        seed_synced(store)

        entity = store.get_entity("tasks", "t1")
        assert entity.state == EntityState.SYNCED
        assert entity.revision == "5"

    def test_newer_revision_overwrites_synced_entity(self, store):
        seed_synced(store)
        record = {"id": "t1", "title": "Buy oat milk", "updated_at": "6"}

        result = store.merge_remote(remote_event(ChangeType.UPDATE, record, "6"))

        assert result == MergeResult.APPLIED
        assert store.get_entity("tasks", "t1").payload["title"] == "Buy oat milk"

    def test_older_revision_is_ignored(self, store):
        seed_synced(store, revision="5")
        record = {"id": "t1", "title": "stale", "updated_at": "4"}

        assert store.merge_remote(remote_event(ChangeType.UPDATE, record, "4")) == MergeResult.IGNORED
        assert store.get_entity("tasks", "t1").payload["title"] == "Buy milk"

    def test_same_revision_same_payload_is_ignored(self, store):
        record = seed_synced(store)

        assert store.merge_remote(remote_event(ChangeType.UPDATE, dict(record), "5")) == MergeResult.IGNORED

    def test_same_revision_different_payload_is_flagged(self, store):
        seed_synced(store)
        record = {"id": "t1", "title": "Different", "updated_at": "5"}

        result = store.merge_remote(remote_event(ChangeType.UPDATE, record, "5"))

        entity = store.get_entity("tasks", "t1")
        assert result == MergeResult.CONFLICT
        assert entity.state == EntityState.CONFLICT
        assert entity.payload["title"] == "Buy milk"
        assert entity.conflict_payload["title"] == "Different"

    def test_timestamp_revisions_compare_chronologically(self, store):
        seed_synced(store, revision="2024-05-01T10:00:00+00:00")
        record = {"id": "t1", "title": "later", "updated_at": "2024-05-01T09:00:00Z"}

        assert store.merge_remote(
            remote_event(ChangeType.UPDATE, record, "2024-05-01T09:00:00Z")
        ) == MergeResult.IGNORED

    def test_remote_delete_removes_synced_entity(self, store):
        seed_synced(store)

        result = store.merge_remote(remote_event(ChangeType.DELETE, {}, None, old_record={"id": "t1"}))

        assert result == MergeResult.DELETED
        assert store.get_entity("tasks", "t1", include_deleted=True) is None

    def test_remote_delete_with_pending_update_is_conflict(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"done": True})
        store.append_outbox(make_entry("k1", payload={"done": True}))

        result = store.merge_remote(remote_event(ChangeType.DELETE, {}, None, old_record={"id": "t1"}))

        entity = store.get_entity("tasks", "t1")
        assert result == MergeResult.CONFLICT
        assert entity.state == EntityState.CONFLICT
        assert entity.conflict_deleted
        assert entity.payload["done"] is True

    def test_newer_remote_change_with_pending_edit_is_conflict(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"title": "Mine"})
        store.append_outbox(make_entry("k1", payload={"title": "Mine"}))
        record = {"id": "t1", "title": "Theirs", "updated_at": "6", "client_mutation_id": "x"}

        result = store.merge_remote(remote_event(ChangeType.UPDATE, record, "6"), "client_mutation_id")

        entity = store.get_entity("tasks", "t1")
        assert result == MergeResult.CONFLICT
        assert entity.payload["title"] == "Mine"
        assert entity.conflict_revision == "6"

    def test_echo_of_own_mutation_is_ignored(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"title": "Mine"})
        store.append_outbox(make_entry("k1", payload={"title": "Mine"}))
        record = {"id": "t1", "title": "Mine", "updated_at": "6", "client_mutation_id": "k1"}

        result = store.merge_remote(remote_event(ChangeType.UPDATE, record, "6"), "client_mutation_id")

        assert result == MergeResult.IGNORED
        assert store.get_entity("tasks", "t1").state == EntityState.PENDING

    def test_event_without_id_is_ignored(self, store):
        assert store.merge_remote(remote_event(ChangeType.INSERT, {"title": "x"}, "1")) == MergeResult.IGNORED


class TestOutbox:
    """Outbox bookkeeping"""

    def test_entries_are_fifo(self, store):
        for key in ("a", "b", "c"):
            store.append_outbox(make_entry(key))

        assert [e.idempotency_key for e in store.outbox_entries()] == ["a", "b", "c"]
        assert [e.seq for e in store.outbox_entries()] == sorted(e.seq for e in store.outbox_entries())

    def test_pending_count_per_type(self, store):
        store.append_outbox(make_entry("a"))
        store.append_outbox(make_entry("b", table="expenses", entity_id="e1"))

        assert store.pending_count() == 2
        assert store.pending_count("tasks") == 1
        assert store.pending_count("reminders") == 0

    def test_record_failed_attempt_increments(self, store):
        store.append_outbox(make_entry("a"))

        assert store.record_failed_attempt("a", "timeout") == 1
        assert store.record_failed_attempt("a", "timeout") == 2
        assert store.get_outbox_entry("a").last_error == "timeout"

    def test_record_failed_attempt_unknown_key(self, store):
        with pytest.raises(OutboxEntryNotFoundError):
            store.record_failed_attempt("missing", "x")

    def test_acknowledge_reconciles_entity(self, store):
        store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})
        entry = store.append_outbox(make_entry("k1", operation=MutationOperation.CREATE, payload={"title": "a"}))
        server = {"id": "t1", "title": "a", "updated_at": "7", "client_mutation_id": "k1"}

        store.acknowledge(entry, server, "7")

        entity = store.get_entity("tasks", "t1")
        assert entity.state == EntityState.SYNCED
        assert entity.revision == "7"
        assert entity.payload == server
        assert store.pending_count() == 0

    def test_acknowledge_keeps_pending_while_more_entries_wait(self, store):
        store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})
        first = store.append_outbox(make_entry("k1", operation=MutationOperation.CREATE))
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"title": "b"})
        store.append_outbox(make_entry("k2", payload={"title": "b"}))

        store.acknowledge(first, {"id": "t1", "title": "a", "updated_at": "1"}, "1")

        entity = store.get_entity("tasks", "t1")
        assert entity.state == EntityState.PENDING
        assert entity.revision == "1"
        assert entity.payload["title"] == "b"

    def test_acknowledged_delete_removes_row(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.DELETE, {})
        entry = store.append_outbox(make_entry("k1", operation=MutationOperation.DELETE))

        store.acknowledge(entry, None, None)

        assert store.get_entity("tasks", "t1", include_deleted=True) is None

    def test_held_entry_blocks_its_entity_only(self, store):
        seed_synced(store)
        seed_synced(store, entity_id="t2")
        held = store.append_outbox(make_entry("a", entity_id="t1"))
        store.append_outbox(make_entry("b", entity_id="t1"))
        store.append_outbox(make_entry("c", entity_id="t2"))

        store.hold_for_conflict(held, {"id": "t1", "updated_at": "9"}, "9", "stale")

        assert [e.idempotency_key for e in store.ready_entries()] == ["c"]
        assert store.get_outbox_entry("a").status == OutboxStatus.CONFLICT
        assert store.pending_count() == 3
        assert store.conflict_count() == 1


class TestDeadLetter:
    """Dead-letter table"""

    def test_move_requeue_and_discard(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"title": ""})
        entry = store.append_outbox(make_entry("k1", payload={"title": ""}))
        store.record_failed_attempt("k1", "bad")

        moved = store.move_to_dead_letter(entry, DeadLetterReason.PERMANENT, "title required")

        assert moved.attempts == 1
        assert store.pending_count() == 0
        assert store.dead_letter_count() == 1
        assert store.get_entity("tasks", "t1").state == EntityState.ERROR
        [dead] = store.dead_letter_entries()
        assert dead.dead_letter_reason == DeadLetterReason.PERMANENT

        requeued = store.requeue_dead_letter("k1")
        assert requeued.attempts == 0
        assert store.pending_count() == 1
        assert store.dead_letter_count() == 0
        assert store.get_entity("tasks", "t1").state == EntityState.PENDING

        store.move_to_dead_letter(requeued, DeadLetterReason.RETRIES_EXHAUSTED, "timeout")
        store.discard_dead_letter("k1")
        assert store.dead_letter_count() == 0

    def test_requeued_entry_goes_ahead_of_later_edits(self, store):
        seed_synced(store)
        first = store.append_outbox(make_entry("e1", payload={"title": "E1"}))
        store.move_to_dead_letter(first, DeadLetterReason.RETRIES_EXHAUSTED, "timeout")
        store.append_outbox(make_entry("e2", payload={"title": "E2"}))

        requeued = store.requeue_dead_letter("e1")

        assert requeued.seq == first.seq
        assert [e.idempotency_key for e in store.entries_for_entity("tasks", "t1")] == ["e1", "e2"]
        assert [e.idempotency_key for e in store.ready_entries()] == ["e1", "e2"]

    def test_discard_unknown_key(self, store):
        with pytest.raises(OutboxEntryNotFoundError):
            store.discard_dead_letter("missing")


class TestConflictResolution:
    """clear_conflict()"""

    def _conflicted(self, store):
        seed_synced(store)
        store.apply_local_write("tasks", "t1", MutationOperation.UPDATE, {"title": "Mine"})
        entry = store.append_outbox(make_entry("k1", payload={"title": "Mine"}))
        store.hold_for_conflict(entry, {"id": "t1", "title": "Theirs", "updated_at": "8"}, "8", "stale")

    def test_keep_local_rebases_onto_remote_revision(self, store):
        self._conflicted(store)

        entity = store.clear_conflict("tasks", "t1", keep_local=True)

        assert entity.state == EntityState.PENDING
        assert entity.revision == "8"
        assert entity.payload["title"] == "Mine"
        assert [e.idempotency_key for e in store.ready_entries()] == ["k1"]

    def test_keep_remote_drops_local_edits(self, store):
        self._conflicted(store)

        entity = store.clear_conflict("tasks", "t1", keep_local=False)

        assert entity.state == EntityState.SYNCED
        assert entity.payload["title"] == "Theirs"
        assert store.pending_count() == 0


class TestChangeListeners:
    """Change notifications"""

    def test_listener_called_after_commit(self, store):
        changes = []
        store.add_change_listener(changes.append)

        seed_synced(store)

        assert len(changes) == 1
        assert changes[0].source == "remote"
        assert changes[0].entity.entity_id == "t1"

    def test_listener_not_called_on_rollback(self, store):
        changes = []
        store.add_change_listener(changes.append)

        with pytest.raises(ValueError):
            with store.transaction():
                store.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})
                raise ValueError("abort")

        assert changes == []

    def test_failing_listener_is_isolated(self, store):
        seen = []

        def broken(change):
            raise RuntimeError("listener bug")

        store.add_change_listener(broken)
        store.add_change_listener(seen.append)

        seed_synced(store)

        assert len(seen) == 1

    def test_remove_listener(self, store):
        seen = []
        remove = store.add_change_listener(seen.append)
        remove()

        seed_synced(store)

        assert seen == []


class TestPersistenceAndViews:
    """File-backed store and DataFrame views"""

    def test_outbox_survives_restart(self, tmp_path):
        path = tmp_path / "cache.db"
        first = LocalStore(path)
        first.initialize()
        first.apply_local_write("tasks", "t1", MutationOperation.CREATE, {"title": "a"})
        first.append_outbox(make_entry("k1", operation=MutationOperation.CREATE))
        first.set_meta("last_synced", "2024-05-01T10:00:00+00:00")
        first.close()

        second = LocalStore(path)
        second.initialize()
        assert second.pending_count() == 1
        assert second.get_entity("tasks", "t1").state == EntityState.PENDING
        assert second.get_meta("last_synced") == "2024-05-01T10:00:00+00:00"
        second.close()

    def test_to_dataframe(self, store):
        store.append_outbox(make_entry("a"))
        store.append_outbox(make_entry("b", table="expenses", entity_id="e1"))

        frame = store.to_dataframe("outbox")

        assert list(frame["idempotency_key"]) == ["a", "b"]
        assert "attempts" in frame.columns

    def test_unknown_view_raises(self, store):
        with pytest.raises(LocalStoreError):
            store.to_dataframe("secrets")

    def test_entity_counts(self, store):
        seed_synced(store, entity_id="t1")
        seed_synced(store, entity_id="t2")
        store.apply_local_write("tasks", "t3", MutationOperation.CREATE, {"title": "c"})

        counts = store.entity_counts().set_index("state")["count"].to_dict()

        assert counts == {"pending": 1, "synced": 2}
