# test_sync_store_db.py
#
# Unit tests for the local sync store: records, cascade deletes, the pending
# change queue and atomic application of fetched pages.
#
# Imports
from datetime import datetime, timezone
from pathlib import Path

import pytest
#
# Local Imports
from zonesync.DB.Sync_Store_DB import (
    SyncStoreDatabase, InputError, SchemaError, FAILED, PENDING, DATABASE_TOKEN_KEY,
)
from zonesync.sync_api.schemas import SyncRecord
#
#######################################################################################################################
#
# Functions:

def server_record(name, fields=None, tag="t1", zone="notes", record_type="Note", parent=None, edit_counter=1):
    return SyncRecord(
        zone_name=zone, record_name=name, record_type=record_type, fields=fields or {},
        change_tag=tag, parent_name=parent, edit_counter=edit_counter,
        modified_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def pending_ops(db, zone="notes"):
    return {e['record_name']: e['operation'] for e in db.get_pending_changes(zone, include_failed=True)}


class TestSchema:
    def test_requires_client_id(self, tmp_path):
        with pytest.raises(ValueError):
            SyncStoreDatabase(str(tmp_path / "x.db"), client_id="")

    def test_reopen_existing_database(self, tmp_path):
        path = str(tmp_path / "store.db")
        db = SyncStoreDatabase(path, client_id="c1")
        db.save_record("notes", "a", "Note", {"title": "kept"})
        db.close_connection()

        reopened = SyncStoreDatabase(path, client_id="c1")
        assert reopened.get_record("notes", "a").fields == {"title": "kept"}
        reopened.close_connection()

    def test_newer_schema_version_is_rejected(self, tmp_path):
        path = str(tmp_path / "store.db")
        db = SyncStoreDatabase(path, client_id="c1")
        db.execute_query("UPDATE schema_version SET version = 99")
        db.close_connection()
        with pytest.raises(SchemaError):
            SyncStoreDatabase(path, client_id="c1")


class TestRecords:
    def test_save_creates_zone_and_queues_changes(self, store):
        record = store.save_record("notes", "a", "Note", {"title": "hello"})

        assert record.edit_counter == 1
        assert record.change_tag is None
        assert store.zone_exists("notes")
        entry = store.get_pending_change("notes", "a")
        assert entry['operation'] == "save"
        assert entry['generation'] == 1
        assert entry['status'] == PENDING
        assert [(z['zone_name'], z['operation']) for z in store.get_pending_zone_changes()] == [("notes", "save")]

    def test_second_save_coalesces_and_bumps_generation(self, store):
        store.save_record("notes", "a", "Note", {"title": "v1"})
        record = store.save_record("notes", "a", "Note", {"title": "v2"})

        assert record.edit_counter == 2
        assert record.fields == {"title": "v2"}
        assert store.count_pending("notes") == 1
        assert store.get_pending_change("notes", "a")['generation'] == 2

    def test_field_values_survive_storage(self, store):
        fields = {"blob": b"\x00\x01\xff", "tags": ["a", "b"], "empty": None, "ratio": 1.5, "flag": True}
        store.save_record("notes", "a", "Note", fields)
        assert store.get_record("notes", "a").fields == fields

    @pytest.mark.parametrize("kwargs", [
        {"zone_name": "", "record_name": "a", "record_type": "Note"},
        {"zone_name": "notes", "record_name": " ", "record_type": "Note"},
        {"zone_name": "notes", "record_name": "a", "record_type": ""},
        {"zone_name": "notes", "record_name": "a", "record_type": "Note", "fields": {"bad": {"nested": 1}}},
        {"zone_name": "notes", "record_name": "a", "record_type": "Note", "parent_name": "a"},
        {"zone_name": "notes", "record_name": "a", "record_type": "Note", "parent_name": "missing"},
    ])
    def test_invalid_input_is_rejected(self, store, kwargs):
        with pytest.raises(InputError):
            store.save_record(**kwargs)
        assert store.get_record("notes", "a") is None
        assert store.count_pending() == 0

    def test_delete_cascades_to_descendants(self, store):
        store.save_record("notes", "p", "Folder")
        store.save_record("notes", "c1", "Note", parent_name="p")
        store.save_record("notes", "c2", "Note", parent_name="p")
        store.save_record("notes", "g", "Note", parent_name="c1")
        store.save_record("notes", "other", "Note")

        removed = store.delete_record("notes", "p")

        assert removed == 4
        assert [r.record_name for r in store.list_records("notes")] == ["other"]
        assert pending_ops(store) == {"p": "delete", "c1": "delete", "c2": "delete", "g": "delete", "other": "save"}

    def test_delete_of_unknown_record_is_still_queued(self, store):
        assert store.delete_record("notes", "ghost") == 0
        assert store.get_pending_change("notes", "ghost")['operation'] == "delete"

    def test_get_children(self, store):
        store.save_record("notes", "p", "Folder")
        store.save_record("notes", "b", "Note", parent_name="p")
        store.save_record("notes", "a", "Note", parent_name="p")
        assert [r.record_name for r in store.get_children("notes", "p")] == ["a", "b"]

    def test_delete_zone_purges_and_queues(self, store):
        store.save_record("notes", "a", "Note")
        store.save_record("notes", "b", "Note")
        store.save_record("other", "x", "Note")

        assert store.delete_zone("notes") == 2

        assert not store.zone_exists("notes")
        assert store.list_records("notes") == []
        assert store.count_pending("notes") == 0
        assert store.count_pending("other") == 1
        zone_ops = {z['zone_name']: z['operation'] for z in store.get_pending_zone_changes()}
        assert zone_ops == {"notes": "delete", "other": "save"}

    def test_reusing_a_deleted_zone_keeps_the_delete_queued(self, store):
        store.save_record("notes", "old", "Note")
        store.confirm_pending_zone_change("notes", "save")
        store.delete_zone("notes")
        store.save_record("notes", "new", "Note")

        change = store.get_pending_zone_change("notes")
        assert (change['operation'], change['recreate']) == ("delete", 1)
        assert store.zones_awaiting_server() == {"notes"}

        assert store.confirm_pending_zone_change("notes", "delete") is True
        change = store.get_pending_zone_change("notes")
        assert (change['operation'], change['recreate']) == ("save", 0)
        assert store.zones_awaiting_server() == set()
        assert [r.record_name for r in store.list_records("notes")] == ["new"]

    def test_delete_replaces_a_queued_zone_save(self, store):
        store.create_zone("notes")
        store.delete_zone("notes")

        change = store.get_pending_zone_change("notes")
        assert (change['operation'], change['recreate']) == ("delete", 0)
        assert store.confirm_pending_zone_change("notes", "delete") is True
        assert store.get_pending_zone_change("notes") is None

    def test_failed_zone_change_is_parked_until_requeued(self, store):
        store.create_zone("notes")
        store.mark_zone_change_failed("notes", "permission_failure")

        assert store.get_pending_zone_changes() == []
        assert store.get_pending_zone_change("notes")['status'] == FAILED
        assert store.zones_awaiting_server() == {"notes"}

        assert store.requeue_failed() == 1
        assert [z['zone_name'] for z in store.get_pending_zone_changes()] == ["notes"]
        assert store.zones_awaiting_server() == set()


class TestPendingQueue:
    def test_confirm_only_removes_matching_generation(self, store):
        store.save_record("notes", "a", "Note", {"v": 1})
        store.save_record("notes", "a", "Note", {"v": 2})

        assert store.confirm_pending_change("notes", "a", 1) is False
        assert store.get_pending_change("notes", "a") is not None
        assert store.confirm_pending_change("notes", "a", 2) is True
        assert store.get_pending_change("notes", "a") is None

    def test_attempts_failure_and_requeue(self, store):
        store.save_record("notes", "a", "Note")
        assert store.record_pending_attempt("notes", "a", "service_unavailable") == 1

        store.mark_pending_failed("notes", "a", "permission_failure")
        entry = store.get_pending_change("notes", "a")
        assert entry['status'] == FAILED
        assert entry['attempts'] == 2
        assert entry['last_error'] == "permission_failure"
        assert store.get_pending_changes("notes") == []
        assert len(store.get_pending_changes("notes", include_failed=True)) == 1
        assert store.count_pending(status=FAILED) == 1

        assert store.requeue_failed() == 1
        entry = store.get_pending_change("notes", "a")
        assert entry['status'] == PENDING
        assert entry['attempts'] == 0

    def test_new_local_edit_reactivates_failed_entry(self, store):
        store.save_record("notes", "a", "Note")
        store.mark_pending_failed("notes", "a", "bad_request")
        store.save_record("notes", "a", "Note", {"fixed": True})
        entry = store.get_pending_change("notes", "a")
        assert entry['status'] == PENDING
        assert entry['attempts'] == 0
        assert entry['last_error'] is None

    def test_noted_error_does_not_count_an_attempt(self, store):
        store.save_record("notes", "a", "Note")
        store.note_pending_error("notes", "a", "zone_not_found")
        entry = store.get_pending_change("notes", "a")
        assert entry['attempts'] == 0
        assert entry['last_error'] == "zone_not_found"

    def test_queue_order_and_limit(self, store):
        for name in ["c", "a", "b"]:
            store.save_record("notes", name, "Note")
        store.save_record("late", "z", "Note")

        assert [e['record_name'] for e in store.get_pending_changes("notes")] == ["c", "a", "b"]
        assert [e['record_name'] for e in store.get_pending_changes("notes", limit=2)] == ["c", "a"]
        assert store.zones_with_pending_changes() == ["notes", "late"]

    def test_enqueue_rejects_unknown_operation(self, store):
        with pytest.raises(InputError):
            store.enqueue_change("notes", "a", "upsert")


class TestApplyZoneChanges:
    def test_page_and_token_are_persisted_together(self, store):
        counts = store.apply_zone_changes("notes", [server_record("a", {"x": 1}), server_record("b")], [], "tok-1")

        assert counts == {"saved": 2, "deleted": 0, "skipped": 0}
        assert store.get_zone_token("notes") == "tok-1"
        assert store.get_record("notes", "a").change_tag == "t1"
        assert store.get_base_fields("notes", "a") == {"x": 1}
        assert store.count_pending() == 0

    def test_failure_rolls_back_records_and_token(self, store, mocker):
        store.apply_zone_changes("notes", [server_record("a")], [], "tok-1")
        mocker.patch.object(store, "_apply_remote_delete", side_effect=RuntimeError("disk gone"))

        with pytest.raises(RuntimeError):
            store.apply_zone_changes("notes", [server_record("b")], ["a"], "tok-2")

        assert store.get_zone_token("notes") == "tok-1"
        assert store.get_record("notes", "b") is None
        assert store.get_record("notes", "a") is not None

    def test_pending_save_is_not_overwritten(self, store):
        store.save_record("notes", "a", "Note", {"title": "mine"})
        counts = store.apply_zone_changes("notes", [server_record("a", {"title": "theirs"})], [], "tok-1")

        assert counts["skipped"] == 1
        assert store.get_record("notes", "a").fields == {"title": "mine"}
        assert store.get_pending_change("notes", "a") is not None
        assert store.get_zone_token("notes") == "tok-1"

    def test_echo_of_own_save_confirms_pending(self, store):
        store.save_record("notes", "a", "Note", {"title": "same"})
        store.apply_zone_changes("notes", [server_record("a", {"title": "same"}, tag="t9")], [], "tok-1")

        assert store.get_pending_change("notes", "a") is None
        assert store.get_record("notes", "a").change_tag == "t9"

    def test_remote_delete_satisfies_pending_delete(self, store):
        store.apply_server_record(server_record("a"))
        store.delete_record("notes", "a")

        store.apply_zone_changes("notes", [], ["a"], "tok-2")

        assert store.get_pending_change("notes", "a") is None
        assert store.get_record("notes", "a") is None

    def test_remote_delete_with_pending_save_clears_tag(self, store):
        store.apply_server_record(server_record("a", {"v": 1}))
        store.save_record("notes", "a", "Note", {"v": 2})

        store.apply_zone_changes("notes", [], ["a"], "tok-2")

        record = store.get_record("notes", "a")
        assert record is not None
        assert record.change_tag is None
        assert record.fields == {"v": 2}
        assert store.get_pending_change("notes", "a")['operation'] == "save"

    def test_remote_parent_delete_cascades_except_pending_children(self, store):
        store.apply_zone_changes("notes", [
            server_record("p", record_type="Folder"),
            server_record("c1", parent="p"),
            server_record("c2", parent="p"),
        ], [], "tok-1")
        store.save_record("notes", "c2", "Note", {"edited": True}, parent_name="p")

        counts = store.apply_zone_changes("notes", [], ["p"], "tok-2")

        assert counts["deleted"] == 2
        assert store.get_record("notes", "p") is None
        assert store.get_record("notes", "c1") is None
        assert store.get_record("notes", "c2") is not None

    def test_full_resync_drops_unseen_records_without_pending_changes(self, store):
        store.apply_zone_changes("notes", [server_record("a"), server_record("b"), server_record("c")], [], "tok-1")
        store.save_record("notes", "local", "Note")

        store.apply_zone_changes("notes", [server_record("a")], [], "tok-fresh", full_resync_names={"a"})

        names = [r.record_name for r in store.list_records("notes")]
        assert names == ["a", "local"]
        assert store.get_zone_token("notes") == "tok-fresh"


class TestState:
    def test_state_roundtrip(self, store):
        assert store.get_state(DATABASE_TOKEN_KEY) is None
        store.set_state(DATABASE_TOKEN_KEY, "db-1")
        store.set_state(DATABASE_TOKEN_KEY, "db-2")
        assert store.get_state(DATABASE_TOKEN_KEY) == "db-2"
        store.delete_state(DATABASE_TOKEN_KEY)
        assert store.get_state(DATABASE_TOKEN_KEY, "none") == "none"

    def test_clear_zone_token(self, store):
        store.apply_zone_changes("notes", [], [], "tok-1")
        store.clear_zone_token("notes")
        assert store.get_zone_token("notes") is None
        assert store.list_zones()[0]['zone_name'] == "notes"

    def test_nested_transaction_rolls_back_as_a_unit(self, store):
        with pytest.raises(ValueError):
            with store.transaction():
                store.save_record("notes", "a", "Note")
                store.set_state("k", "v")
                raise ValueError("abort")
        assert store.get_record("notes", "a") is None
        assert store.get_state("k") is None
        assert store.count_pending() == 0
