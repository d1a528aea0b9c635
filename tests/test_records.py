"""Tests for RecordStore -- CRUD, hashing and TTL resolution."""
from datetime import timedelta

import pytest

from gsd_knowledge.errors import IdentityMismatchError
from gsd_knowledge.hashing import content_hash
from gsd_knowledge.records import RecordStore

from conftest import unit_vector


class TestInsertAndGet:
    def test_round_trip(self, records):
        meta = {"confidence": 0.8, "source": "review", "tags": ["db", "sqlite"]}
        result = records.insert("Always run migrations at open time", "decision", metadata=meta)
        assert result["success"] is True

        entry = records.get(result["id"])
        assert entry.content == "Always run migrations at open time"
        assert entry.type == "decision"
        assert entry.scope == "project"
        assert entry.metadata == meta
        assert entry.access_count == 0
        assert entry.content_hash == result["content_hash"]

    def test_content_hash_stable(self, records):
        a = records.insert("same text", "lesson")
        b = records.insert("same text", "summary")
        assert a["content_hash"] == b["content_hash"] == content_hash("same text")

    def test_get_missing_returns_none(self, records):
        assert records.get(9999) is None

    def test_get_hides_expired(self, records, clock):
        entry_id = records.insert("scratch note", "temp_note")["id"]
        clock.advance(hours=30)
        assert records.get(entry_id) is None
        assert records.get(entry_id, include_expired=True).id == entry_id

    def test_get_by_hash(self, records):
        result = records.insert("lookup by hash", "lesson")
        entry = records.get_by_hash(result["content_hash"])
        assert entry.id == result["id"]

    def test_project_slug_column_from_metadata(self, records):
        result = records.insert("slugged", "lesson", metadata={"project_slug": "alpha"})
        assert records.get(result["id"]).project_slug == "alpha"

    def test_empty_content_rejected(self, records):
        result = records.insert("   ", "lesson")
        assert result["success"] is False
        assert result["error"] == "invalid_entry"

    def test_oversized_content_rejected(self, records, db):
        db.settings.max_content_size = 10
        result = records.insert("x" * 11, "lesson")
        assert result["error"] == "invalid_entry"

    def test_unknown_ttl_category_rejected(self, records):
        result = records.insert("text", "lesson", ttl_category="forever")
        assert result["error"] == "invalid_entry"
        assert records.count() == 0


class TestTTLResolution:
    @pytest.mark.parametrize("knowledge_type,expected", [
        ("lesson", None),
        ("decision", timedelta(days=90)),
        ("summary", timedelta(days=7)),
        ("temp_note", timedelta(hours=24)),
        ("custom_tag", timedelta(days=7)),
    ])
    def test_type_defaults(self, records, knowledge_type, expected):
        entry = records.get(records.insert("ttl check", knowledge_type)["id"])
        if expected is None:
            assert entry.expires_at is None
        else:
            assert entry.expires_at - entry.created_at == expected

    def test_explicit_category_overrides_type(self, records):
        entry = records.get(records.insert("keep forever", "temp_note", ttl_category="permanent")["id"])
        assert entry.expires_at is None
        assert entry.ttl_category == "permanent"


class TestGetByType:
    def test_ordered_by_access_then_recency(self, records, lifecycle, clock):
        first = records.insert("first decision", "decision")["id"]
        clock.advance(minutes=1)
        second = records.insert("second decision", "decision")["id"]
        clock.advance(minutes=1)
        popular = records.insert("popular decision", "decision")["id"]
        records.insert("a lesson", "lesson")
        lifecycle.track_access_batch([popular])

        ids = [e.id for e in records.get_by_type("decision")]
        assert ids == [popular, second, first]

    def test_limit_and_expiry(self, records, clock):
        records.insert("note one", "temp_note")
        records.insert("note two", "temp_note")
        assert len(records.get_by_type("temp_note", limit=1)) == 1
        clock.advance(hours=25)
        assert records.get_by_type("temp_note") == []


class TestUpdate:
    def test_content_change_recomputes_hash(self, records):
        entry_id = records.insert("before", "lesson")["id"]
        result = records.update(entry_id, content="after")
        assert result["success"] is True
        entry = records.get(entry_id)
        assert entry.content == "after"
        assert entry.content_hash == content_hash("after")

    def test_type_change_recomputes_expiry(self, records, clock):
        entry_id = records.insert("promote me", "temp_note")["id"]
        clock.advance(hours=1)
        records.update(entry_id, type="decision")
        entry = records.get(entry_id)
        assert entry.type == "decision"
        assert entry.ttl_category == "long_term"
        assert entry.expires_at == clock.now + timedelta(days=90)

    def test_ttl_change_recomputes_expiry(self, records):
        entry_id = records.insert("pin me", "summary")["id"]
        records.update(entry_id, ttl_category="permanent")
        assert records.get(entry_id).expires_at is None

    def test_metadata_only_keeps_expiry(self, records, clock):
        entry_id = records.insert("stable", "summary")["id"]
        before = records.get(entry_id).expires_at
        clock.advance(days=1)
        records.update(entry_id, metadata={"tags": ["x"]})
        entry = records.get(entry_id)
        assert entry.metadata == {"tags": ["x"]}
        assert entry.expires_at == before

    def test_embedding_update_rejected(self, records):
        entry_id = records.insert("immutable vector", "lesson")["id"]
        result = records.update(entry_id, embedding=unit_vector(3))
        assert result["success"] is False
        assert result["error"] == "embedding_update_unsupported"

    def test_embedding_rejected_even_with_other_fields(self, records):
        entry_id = records.insert("original", "lesson")["id"]
        result = records.update(entry_id, content="changed", embedding=unit_vector(3))
        assert result["error"] == "embedding_update_unsupported"
        assert records.get(entry_id).content == "original"

    def test_unknown_field_rejected(self, records):
        entry_id = records.insert("x", "lesson")["id"]
        assert records.update(entry_id, colour="red")["error"] == "invalid_entry"

    def test_missing_entry_not_found(self, records):
        result = records.update(424242, content="nothing")
        assert result == {
            "success": False,
            "error": "not_found",
            "message": "entry 424242 not found",
            "id": 424242,
        }


class TestDeleteAndRefresh:
    def test_delete(self, records):
        entry_id = records.insert("short lived", "lesson")["id"]
        assert records.delete(entry_id)["success"] is True
        assert records.get(entry_id) is None

    def test_delete_missing(self, records):
        assert records.delete(12345)["error"] == "not_found"

    def test_refresh_ttl_restarts_window(self, records, clock):
        entry_id = records.insert("bump me", "temp_note")["id"]
        clock.advance(hours=20)
        result = records.refresh_ttl(entry_id)
        assert result["success"] is True
        assert records.get(entry_id).expires_at == clock.now + timedelta(hours=24)

    def test_refresh_ttl_with_new_category(self, records):
        entry_id = records.insert("bump me", "temp_note")["id"]
        result = records.refresh_ttl(entry_id, "permanent")
        assert result["expires_at"] is None
        assert records.get(entry_id).ttl_category == "permanent"

    def test_refresh_missing(self, records):
        assert records.refresh_ttl(777)["error"] == "not_found"


class TestVectorPairing:
    def test_insert_writes_paired_vector(self, vec_db):
        records = RecordStore(vec_db)
        entry_id = records.insert("with vector", "lesson", embedding=unit_vector(5))["id"]
        stored = records.get_embedding(entry_id)
        assert len(stored) == 512
        assert stored[5] == pytest.approx(1.0)

    def test_embedding_normalized_at_write(self, vec_db):
        records = RecordStore(vec_db)
        raw = [0.0] * 512
        raw[0] = 3.0
        raw[1] = 4.0
        entry_id = records.insert("scaled vector", "lesson", embedding=raw)["id"]
        stored = records.get_embedding(entry_id)
        assert stored[0] == pytest.approx(0.6)
        assert stored[1] == pytest.approx(0.8)

    def test_wrong_dimension_rejected(self, vec_db):
        records = RecordStore(vec_db)
        result = records.insert("bad vector", "lesson", embedding=[1.0, 0.0, 0.0])
        assert result["error"] == "invalid_embedding"
        assert records.count() == 0

    def test_delete_removes_vector_row(self, vec_db):
        records = RecordStore(vec_db)
        entry_id = records.insert("with vector", "lesson", embedding=unit_vector(1))["id"]
        records.delete(entry_id)
        assert vec_db.query_one("SELECT COUNT(*) FROM knowledge_vec")[0] == 0

    def test_identity_mismatch_rolls_back(self, vec_db, monkeypatch):
        records = RecordStore(vec_db)

        def mismatch(conn, entry_id):
            raise IdentityMismatchError("forced", id=entry_id)

        monkeypatch.setattr(RecordStore, "_verify_pair", staticmethod(mismatch))
        result = records.insert("doomed", "lesson", embedding=unit_vector(2))
        assert result["error"] == "identity_mismatch"
        assert records.count() == 0
        assert vec_db.query_one("SELECT COUNT(*) FROM knowledge_vec")[0] == 0
