"""Tests for StoreManager, KnowledgeDB transactions and schema migrations."""
import functools
import os
import sqlite3
import stat

import pytest

from gsd_knowledge.config import Settings
from gsd_knowledge.connection import StoreManager, current_user, retry_on_locked
from gsd_knowledge.errors import MigrationError, StoreCorruptedError, StoreLockedError
from gsd_knowledge.migrations import LATEST_VERSION, MIGRATIONS, run_migrations


def _insert_raw(conn, content="x"):
    conn.execute(
        "INSERT INTO knowledge (content, type, scope, created_at, content_hash) VALUES (?, 'lesson', 'project', '2026', 'h')",
        (content,),
    )


class TestPathResolution:
    def test_project_scope_lives_under_planning(self, manager, settings):
        path = manager.resolve_path("project")
        assert path.parent == (settings.project_dir / ".planning" / "knowledge").resolve()
        assert path.name == f"{current_user()}.db"

    def test_global_scope_lives_under_home(self, manager, settings):
        path = manager.resolve_path("global")
        assert path.parent == (settings.home / "knowledge").resolve()

    def test_unknown_scope_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.resolve_path("team")

    def test_home_defaults_to_env(self, tmp_knowledge_dirs):
        home, _ = tmp_knowledge_dirs
        assert Settings().home == home


class TestOpen:
    def test_open_creates_file_with_private_mode(self, manager):
        db = manager.open("project")
        assert db.path.exists()
        assert stat.S_IMODE(os.stat(db.path).st_mode) == 0o600

    def test_pragmas_applied(self, db):
        assert db.query_one("PRAGMA journal_mode")[0].lower() == "wal"
        assert db.query_one("PRAGMA busy_timeout")[0] == 200
        assert db.query_one("PRAGMA synchronous")[0] == 1  # NORMAL

    def test_open_is_cached_per_path(self, manager):
        assert manager.open("project") is manager.open("project")
        assert manager.open("project") is not manager.open("global")

    def test_close_evicts_from_cache(self, manager):
        first = manager.open("project")
        manager.close(first)
        assert first.closed
        assert not manager.is_open("project")
        second = manager.open("project")
        assert second is not first

    def test_corrupted_file_is_fatal(self, manager):
        path = manager.resolve_path("project")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"definitely not a sqlite database " * 64)
        with pytest.raises(StoreCorruptedError):
            manager.open("project")

    def test_is_available_does_not_create_store(self, manager):
        status = manager.is_available("project")
        assert status["available"] is True
        assert status["fts"] is True
        assert not manager.resolve_path("project").exists()

    def test_is_available_reports_bad_scope(self, manager):
        status = manager.is_available("nowhere")
        assert status["available"] is False
        assert "nowhere" in status["reason"]

    def test_context_manager_closes_everything(self, settings, clock):
        with StoreManager(settings=settings, clock=clock) as mgr:
            db = mgr.open("project")
        assert db.closed


class TestMigrations:
    def test_fresh_store_at_latest_version(self, db):
        versions = [r[0] for r in db.query("SELECT version FROM schema_version ORDER BY version")]
        assert versions == list(MIGRATIONS.keys())
        assert db.schema_version == LATEST_VERSION

    def test_rerun_is_noop(self, db):
        assert run_migrations(db.conn) == LATEST_VERSION
        assert db.query_one("SELECT COUNT(*) FROM schema_version")[0] == LATEST_VERSION

    def test_upgrade_from_v1_backfills_columns(self, manager):
        path = manager.resolve_path("project")
        path.parent.mkdir(parents=True)
        conn = sqlite3.connect(str(path), isolation_level=None)
        conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
        for stmt in MIGRATIONS[1]:
            conn.execute(stmt)
        conn.execute("INSERT INTO schema_version VALUES (1, '2025-01-01')")
        conn.execute(
            "INSERT INTO knowledge (content, type, scope, created_at, content_hash, metadata) "
            "VALUES ('Old Lesson!', 'decision', 'project', '2025-01-01', 'h', '{\"project_slug\": \"alpha\"}')"
        )
        conn.close()

        db = manager.open("project")
        row = db.query_one("SELECT project_slug, canonical_hash, ttl_category FROM knowledge")
        from gsd_knowledge.hashing import canonical_hash
        assert row[0] == "alpha"
        assert row[1] == canonical_hash("old lesson")
        assert row[2] == "long_term"

    def test_failed_migration_rolls_back(self, monkeypatch, db):
        monkeypatch.setitem(MIGRATIONS, LATEST_VERSION + 1, ["CREATE TABLE extra (id INTEGER)", "NOT VALID SQL"])
        with pytest.raises(MigrationError):
            run_migrations(db.conn)
        assert db.query_one("SELECT name FROM sqlite_master WHERE name = 'extra'") is None
        assert db.query_one("SELECT MAX(version) FROM schema_version")[0] == LATEST_VERSION

    def test_contended_migration_reports_locked(self, monkeypatch, db):
        monkeypatch.setitem(MIGRATIONS, LATEST_VERSION + 1, ["CREATE TABLE extra (id INTEGER)"])
        other = sqlite3.connect(str(db.path), isolation_level=None, timeout=0)
        other.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StoreLockedError):
                run_migrations(db.conn, retry=functools.partial(retry_on_locked, attempts=2, base_delay=0.0))
        finally:
            other.execute("ROLLBACK")
            other.close()
        assert db.query_one("SELECT MAX(version) FROM schema_version")[0] == LATEST_VERSION


class TestTransactions:
    def test_commit(self, db):
        with db.transaction() as conn:
            _insert_raw(conn)
        assert db.query_one("SELECT COUNT(*) FROM knowledge")[0] == 1

    def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                _insert_raw(conn)
                raise RuntimeError("boom")
        assert db.query_one("SELECT COUNT(*) FROM knowledge")[0] == 0
        assert not db.conn.in_transaction

    def test_nested_failure_only_undoes_inner(self, db):
        with db.transaction() as conn:
            _insert_raw(conn, "outer")
            with pytest.raises(RuntimeError):
                with db.transaction() as inner:
                    _insert_raw(inner, "inner")
                    raise RuntimeError("inner failed")
        contents = [r[0] for r in db.query("SELECT content FROM knowledge")]
        assert contents == ["outer"]

    def test_write_lock_held_elsewhere_raises_locked(self, db):
        other = sqlite3.connect(str(db.path), isolation_level=None, timeout=0)
        other.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StoreLockedError):
                with db.transaction():
                    pass
        finally:
            other.execute("ROLLBACK")
            other.close()
        # Lock released: writes succeed again
        with db.transaction() as conn:
            _insert_raw(conn)

    def test_advisory_lock_file(self, tmp_knowledge_dirs, clock):
        home, project = tmp_knowledge_dirs
        settings = Settings(home=home, project_dir=project, advisory_lock=True)
        with StoreManager(settings=settings, clock=clock) as mgr:
            db = mgr.open("project")
            with db.transaction() as conn:
                _insert_raw(conn)
            assert db.path.with_name(db.path.name + ".lock").exists()


class TestRetryOnLocked:
    def test_retries_then_raises(self):
        calls = []

        def locked():
            calls.append(1)
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(StoreLockedError):
            retry_on_locked(locked, attempts=3, base_delay=0.0)
        assert len(calls) == 3

    def test_recovers_after_transient_lock(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert retry_on_locked(flaky, attempts=3, base_delay=0.0) == "ok"
        assert len(calls) == 2

    def test_other_errors_propagate_immediately(self):
        def broken():
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError):
            retry_on_locked(broken, attempts=3, base_delay=0.0)
