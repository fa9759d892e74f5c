# test_conflict_resolver.py
#
# Imports
import pytest
#
# Local Imports
from zonesync.DB.Sync_Store_DB import ConflictError
from zonesync.Sync.conflict_resolver import ConflictPolicy, ConflictResolver
from zonesync.sync_api.schemas import SyncRecord


def record(fields, tag=None, edit_counter=1, record_type="Note", name="a", zone="notes"):
    return SyncRecord(zone_name=zone, record_name=name, record_type=record_type, fields=fields,
                      change_tag=tag, edit_counter=edit_counter)


@pytest.fixture
def local():
    return record({"title": "local", "body": "b"}, tag="t1", edit_counter=3)


@pytest.fixture
def server():
    return record({"title": "server", "body": "b"}, tag="t2", edit_counter=2)


class TestPolicies:
    def test_server_wins_by_default(self, local, server):
        resolution = ConflictResolver().resolve(local, server)
        assert resolution.policy == ConflictPolicy.SERVER_WINS
        assert resolution.resend is False
        assert resolution.record.fields == server.fields
        assert resolution.record.change_tag == "t2"

    def test_client_wins_keeps_local_fields_with_server_tag(self, local, server):
        resolution = ConflictResolver(ConflictPolicy.CLIENT_WINS).resolve(local, server)
        assert resolution.resend is True
        assert resolution.record.fields == local.fields
        assert resolution.record.change_tag == "t2"
        assert resolution.record.edit_counter == 4

    def test_edit_counter_prefers_more_edited_side(self, local, server):
        resolver = ConflictResolver(ConflictPolicy.EDIT_COUNTER)
        assert resolver.resolve(local, server).resend is True

        tied = local.model_copy(update={"edit_counter": 2})
        resolution = resolver.resolve(tied, server)
        assert resolution.resend is False
        assert resolution.record.fields == server.fields

    def test_per_type_override(self, local, server):
        resolver = ConflictResolver(policies_by_type={"Note": "client_wins"})
        assert resolver.policy_for("Note") == ConflictPolicy.CLIENT_WINS
        assert resolver.policy_for("Other") == ConflictPolicy.SERVER_WINS
        assert resolver.resolve(local, server).policy == ConflictPolicy.CLIENT_WINS

    def test_rejects_unknown_clash_preference(self):
        with pytest.raises(ValueError):
            ConflictResolver(prefer_on_field_clash="newest")


class TestFieldMerge:
    def test_disjoint_edits_are_merged(self):
        resolver = ConflictResolver(ConflictPolicy.FIELD_MERGE)
        base = {"title": "t", "body": "b"}
        local = record({"title": "t", "body": "local body"}, tag="t1")
        server = record({"title": "server title", "body": "b"}, tag="t2")

        resolution = resolver.resolve(local, server, base)

        assert resolution.record.fields == {"title": "server title", "body": "local body"}
        assert resolution.record.change_tag == "t2"
        assert resolution.resend is True

    def test_merge_equal_to_server_is_not_resent(self):
        resolver = ConflictResolver(ConflictPolicy.FIELD_MERGE)
        base = {"title": "t"}
        local = record({"title": "t"}, tag="t1")
        server = record({"title": "new"}, tag="t2")

        resolution = resolver.resolve(local, server, base)

        assert resolution.resend is False
        assert resolution.record.fields == {"title": "new"}

    def test_removals_count_as_changes(self):
        merged = ConflictResolver().merge_fields({"a": 1, "b": 2}, {"a": 1}, {"a": 1, "b": 2, "c": 3})
        assert merged == {"a": 1, "c": 3}

    @pytest.mark.parametrize("prefer, expected", [("client", "mine"), ("server", "theirs")])
    def test_clash_without_merger(self, prefer, expected):
        resolver = ConflictResolver(prefer_on_field_clash=prefer)
        merged = resolver.merge_fields({"title": "old"}, {"title": "mine"}, {"title": "theirs"})
        assert merged == {"title": expected}

    def test_clash_uses_field_merger(self):
        def union(name, base, local, server):
            return sorted(set(local or []) | set(server or []))

        resolver = ConflictResolver(field_mergers={"tags": union})
        merged = resolver.merge_fields({"tags": ["a"]}, {"tags": ["a", "b"]}, {"tags": ["a", "c"]})
        assert merged == {"tags": ["a", "b", "c"]}

    def test_without_base_one_sided_fields_are_kept(self):
        merged = ConflictResolver().merge_fields(None, {"x": 1}, {"y": 2})
        assert merged == {"x": 1, "y": 2}


class TestGuards:
    def test_server_record_without_tag_is_rejected(self, local):
        with pytest.raises(ConflictError):
            ConflictResolver().resolve(local, record({"title": "s"}, tag=None))

    def test_identity_mismatch_is_rejected(self, local):
        with pytest.raises(ConflictError):
            ConflictResolver().resolve(local, record({}, tag="t9", name="other"))
