"""
GSD Knowledge Schema Migrations
===============================
Ordered, forward-only migrations. Each version runs in one transaction and
is recorded in ``schema_version``. If one fails it rolls back and the store
refuses to open, so a half-migrated file is never used.

To add a migration:
    1. Add a new entry to MIGRATIONS with the next version number
    2. Each entry is a list of SQL statements or callables taking the connection
    3. All steps in a version run in one transaction

The sqlite-vec table is not created here: it depends on the extension being
loadable in the current process, so the connection layer creates it on open.
"""

import json
import logging
import sqlite3
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Optional

from gsd_knowledge.errors import MigrationError
from gsd_knowledge.hashing import canonical_hash

logger = logging.getLogger("gsd_knowledge.migrations")


def _backfill_canonical_hash(conn: sqlite3.Connection) -> None:
    rows = conn.execute("SELECT id, content, metadata FROM knowledge WHERE canonical_hash IS NULL").fetchall()
    for rowid, content, metadata_json in rows:
        try:
            meta = json.loads(metadata_json) if metadata_json else {}
        except ValueError:
            meta = {}
        value = meta.get("canonical_hash") if isinstance(meta, dict) else None
        conn.execute(
            "UPDATE knowledge SET canonical_hash = ? WHERE id = ?",
            (value or canonical_hash(content), rowid),
        )


def _backfill_project_slug(conn: sqlite3.Connection) -> None:
    rows = conn.execute("SELECT id, metadata FROM knowledge WHERE project_slug IS NULL").fetchall()
    for rowid, metadata_json in rows:
        try:
            meta = json.loads(metadata_json) if metadata_json else {}
        except ValueError:
            continue
        slug = meta.get("project_slug") if isinstance(meta, dict) else None
        if slug:
            conn.execute("UPDATE knowledge SET project_slug = ? WHERE id = ?", (slug, rowid))


MIGRATIONS = OrderedDict()

# Version 1: records, external-content FTS5 index and its sync triggers.
MIGRATIONS[1] = [
    """CREATE TABLE IF NOT EXISTS knowledge (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content TEXT NOT NULL,
        type TEXT NOT NULL,
        scope TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT,
        access_count INTEGER NOT NULL DEFAULT 0,
        last_accessed TEXT,
        content_hash TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}'
    )""",
    """CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
        content,
        content='knowledge',
        content_rowid='id',
        tokenize='porter unicode61'
    )""",
    """CREATE TRIGGER IF NOT EXISTS knowledge_ai AFTER INSERT ON knowledge BEGIN
        INSERT INTO knowledge_fts(rowid, content) VALUES (new.id, new.content);
    END""",
    """CREATE TRIGGER IF NOT EXISTS knowledge_ad AFTER DELETE ON knowledge BEGIN
        INSERT INTO knowledge_fts(knowledge_fts, rowid, content) VALUES('delete', old.id, old.content);
    END""",
    """CREATE TRIGGER IF NOT EXISTS knowledge_au AFTER UPDATE OF content ON knowledge BEGIN
        INSERT INTO knowledge_fts(knowledge_fts, rowid, content) VALUES('delete', old.id, old.content);
        INSERT INTO knowledge_fts(rowid, content) VALUES (new.id, new.content);
    END""",
    "CREATE INDEX IF NOT EXISTS idx_knowledge_expires ON knowledge(expires_at) WHERE expires_at IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_knowledge_type_access ON knowledge(type, access_count DESC)",
    "CREATE INDEX IF NOT EXISTS idx_knowledge_hash ON knowledge(content_hash)",
]

# Version 2: project column, filled from metadata for rows written before it existed.
MIGRATIONS[2] = [
    "ALTER TABLE knowledge ADD COLUMN project_slug TEXT",
    _backfill_project_slug,
    "CREATE INDEX IF NOT EXISTS idx_knowledge_project ON knowledge(project_slug)",
]

# Version 3: canonical hash column for stage-2 dedup lookups.
MIGRATIONS[3] = [
    "ALTER TABLE knowledge ADD COLUMN canonical_hash TEXT",
    _backfill_canonical_hash,
    "CREATE INDEX IF NOT EXISTS idx_knowledge_canonical ON knowledge(canonical_hash)",
]

# Version 4: persisted TTL category so refresh_ttl() can reuse it.
MIGRATIONS[4] = [
    "ALTER TABLE knowledge ADD COLUMN ttl_category TEXT",
    """UPDATE knowledge SET ttl_category = CASE type
        WHEN 'lesson' THEN 'permanent'
        WHEN 'decision' THEN 'long_term'
        WHEN 'summary' THEN 'short_term'
        WHEN 'temp_note' THEN 'ephemeral'
        ELSE 'short_term'
    END WHERE ttl_category IS NULL""",
]

LATEST_VERSION = max(MIGRATIONS.keys())


def get_version(conn: sqlite3.Connection) -> int:
    """Get current schema version. Returns 0 if no version table."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection, retry: Optional[Callable] = None) -> int:
    """Run all pending migrations sequentially. Each in its own transaction.

    *conn* must be in autocommit mode (``isolation_level=None``). *retry*,
    called as ``retry(fn, *args)``, wraps taking the write lock so contention
    surfaces as StoreLockedError rather than a failed migration. Returns the
    schema version after the run.
    """
    begin = retry or (lambda fn, *args: fn(*args))
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
    """)

    current = get_version(conn)

    for version, steps in MIGRATIONS.items():
        if version <= current:
            continue
        try:
            begin(conn.execute, "BEGIN IMMEDIATE")
            # Another process may have migrated while we waited for the lock.
            if get_version(conn) >= version:
                conn.execute("COMMIT")
                continue
            for step in steps:
                if callable(step):
                    step(conn)
                else:
                    conn.execute(step)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise MigrationError(
                f"Schema migration to version {version} failed: {e}",
                version=version,
            ) from e
        logger.info("Schema migrated to v%d", version)

    return get_version(conn)
