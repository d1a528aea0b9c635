"""
GSD Knowledge Records -- CRUD on knowledge entries.

Each write runs in one transaction. A record row and its vector row share the
same rowid: the vector row is inserted with the record's id and checked
before commit, and both are deleted together. Public write methods return
result dicts and never raise past this module.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

from gsd_knowledge.connection import VEC_TABLE, KnowledgeDB
from gsd_knowledge.errors import (
    EmbeddingUpdateUnsupportedError,
    IdentityMismatchError,
    InvalidEntryError,
    KnowledgeStoreError,
    NotFoundError,
)
from gsd_knowledge.hashing import canonical_hash, content_hash
from gsd_knowledge.types import (
    SCOPES,
    KnowledgeEntry,
    TTLCategory,
    format_ts,
    parse_ts,
)
from gsd_knowledge.vectors import deserialize_f32, normalize_embedding, serialize_f32

logger = logging.getLogger("gsd_knowledge.records")

ENTRY_COLUMNS = (
    "k.id, k.content, k.type, k.scope, k.created_at, k.expires_at, k.access_count, "
    "k.last_accessed, k.content_hash, k.canonical_hash, k.ttl_category, k.project_slug, k.metadata"
)
LIVE_CLAUSE = "(k.expires_at IS NULL OR k.expires_at > ?)"

DEFAULT_TYPE_LIMIT = 100
_ID_CHUNK = 500
_UPDATABLE_FIELDS = ("content", "type", "ttl_category", "metadata", "project_slug")


def row_to_entry(row: Sequence[Any]) -> KnowledgeEntry:
    """Convert a row selected with ENTRY_COLUMNS to a KnowledgeEntry."""
    (entry_id, content, type_, scope, created_at, expires_at, access_count,
     last_accessed, chash, canon, ttl_category, project_slug, metadata_json) = row[:13]
    try:
        meta = json.loads(metadata_json) if metadata_json else {}
    except ValueError:
        logger.warning("Entry %s has unreadable metadata, ignoring it", entry_id)
        meta = {}
    return KnowledgeEntry(
        id=entry_id,
        content=content,
        type=type_,
        scope=scope,
        created_at=parse_ts(created_at),
        expires_at=parse_ts(expires_at),
        access_count=access_count or 0,
        last_accessed=parse_ts(last_accessed),
        content_hash=chash,
        canonical_hash=canon,
        ttl_category=ttl_category,
        project_slug=project_slug,
        metadata=meta,
    )


def delete_rows(db: KnowledgeDB, conn: sqlite3.Connection, ids: Iterable[int]) -> int:
    """Delete records and their vector rows. Caller owns the transaction."""
    removed = 0
    for entry_id in ids:
        if db.vector_enabled:
            conn.execute(f"DELETE FROM {VEC_TABLE} WHERE rowid = ?", (entry_id,))
        removed += conn.execute("DELETE FROM knowledge WHERE id = ?", (entry_id,)).rowcount
    return removed


def _dump_metadata(metadata: Dict[str, Any]) -> str:
    return json.dumps(metadata, ensure_ascii=False, sort_keys=True)


class RecordStore:
    """Point reads and transactional writes against one open store."""

    def __init__(self, db: KnowledgeDB):
        self.db = db

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_content(self, content: Any) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidEntryError("content must be a non-empty string")
        size = len(content.encode("utf-8"))
        if size > self.db.settings.max_content_size:
            raise InvalidEntryError(
                f"content is {size} bytes, limit is {self.db.settings.max_content_size}"
            )
        return content

    @staticmethod
    def _validate_type(knowledge_type: Any) -> str:
        if not isinstance(knowledge_type, str) or not knowledge_type.strip():
            raise InvalidEntryError("type must be a non-empty string")
        return knowledge_type

    @staticmethod
    def _validate_ttl(ttl_category: str) -> str:
        try:
            return TTLCategory.validate(ttl_category)
        except ValueError as e:
            raise InvalidEntryError(str(e)) from e

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def insert(
        self,
        content: str,
        type: str,
        scope: Optional[str] = None,
        ttl_category: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        project_slug: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write one entry (and its vector, when given) in a single transaction.

        Returns ``{"success": True, "id", "content_hash", "expires_at"}`` or a
        failure dict with an ``error`` code.
        """
        try:
            return self._insert(content, type, scope, ttl_category, embedding, metadata, project_slug)
        except IdentityMismatchError as e:
            logger.error("Record/vector identity mismatch, insert rolled back: %s", e)
            return e.to_result()
        except KnowledgeStoreError as e:
            logger.warning("Insert rejected: %s", e)
            return e.to_result()
        except sqlite3.Error as e:
            logger.error("Insert failed: %s", e)
            return {"success": False, "error": "database_error", "message": str(e)}

    def _insert(self, content, type, scope, ttl_category, embedding, metadata, project_slug) -> Dict[str, Any]:
        content = self._validate_content(content)
        knowledge_type = self._validate_type(type)
        scope = scope or self.db.scope
        if scope not in SCOPES:
            raise InvalidEntryError(f"Unknown scope {scope!r}")
        category = self._validate_ttl(ttl_category or TTLCategory.for_type(knowledge_type))

        vector = None
        if embedding is not None:
            if self.db.vector_enabled:
                vector = normalize_embedding(embedding, self.db.embedding_dim)
            else:
                logger.debug("Vector search disabled, storing entry without its embedding")

        meta = dict(metadata or {})
        slug = project_slug or meta.get("project_slug")
        chash = content_hash(content)
        canon = meta.get("canonical_hash") or canonical_hash(content)
        now = self.db.now()
        expires = TTLCategory.expires_at(category, now)

        with self.db.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO knowledge
                   (content, type, scope, created_at, expires_at, access_count,
                    content_hash, canonical_hash, ttl_category, project_slug, metadata)
                   VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                (content, knowledge_type, scope, format_ts(now), format_ts(expires),
                 chash, canon, category, slug, _dump_metadata(meta)),
            )
            entry_id = cur.lastrowid
            if vector is not None:
                conn.execute(
                    f"INSERT INTO {VEC_TABLE} (rowid, embedding) VALUES (?, ?)",
                    (entry_id, serialize_f32(vector)),
                )
                self._verify_pair(conn, entry_id)

        logger.debug("Inserted %s entry %d (ttl=%s)", knowledge_type, entry_id, category)
        return {
            "success": True,
            "id": entry_id,
            "content_hash": chash,
            "expires_at": format_ts(expires),
        }

    @staticmethod
    def _verify_pair(conn: sqlite3.Connection, entry_id: int) -> None:
        vec_rows = conn.execute(
            f"SELECT rowid FROM {VEC_TABLE} WHERE rowid = ?", (entry_id,)
        ).fetchall()
        record = conn.execute("SELECT id FROM knowledge WHERE id = ?", (entry_id,)).fetchone()
        if record is None or len(vec_rows) != 1 or vec_rows[0][0] != entry_id:
            raise IdentityMismatchError(
                f"vector row for entry {entry_id} missing or misaligned",
                id=entry_id,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entry_id: int, include_expired: bool = False) -> Optional[KnowledgeEntry]:
        """Entry by id, or None when it is missing or (by default) expired."""
        return self._get_first("k.id = ?", [entry_id], include_expired)

    def _get_first(self, where: str, params: List[Any], include_expired: bool) -> Optional[KnowledgeEntry]:
        sql = f"SELECT {ENTRY_COLUMNS} FROM knowledge k WHERE {where}"
        if not include_expired:
            sql += f" AND {LIVE_CLAUSE}"
            params = params + [format_ts(self.db.now())]
        sql += " ORDER BY k.id LIMIT 1"
        row = self.db.query_one(sql, params)
        return row_to_entry(row) if row else None

    def get_by_hash(self, chash: str, include_expired: bool = True) -> Optional[KnowledgeEntry]:
        return self._get_first("k.content_hash = ?", [chash], include_expired)

    def get_by_canonical_hash(self, canon: str, include_expired: bool = True) -> Optional[KnowledgeEntry]:
        """Match the stored content's canonical hash or any submission merged into it."""
        return self._get_first(
            "(k.canonical_hash = ?"
            " OR json_extract(k.metadata, '$.canonical_hash') = ?"
            " OR EXISTS (SELECT 1 FROM json_each(k.metadata, '$.canonical_hashes') h WHERE h.value = ?))",
            [canon, canon, canon],
            include_expired,
        )

    def get_by_type(
        self,
        knowledge_type: str,
        scope: Optional[str] = None,
        limit: int = DEFAULT_TYPE_LIMIT,
        include_expired: bool = False,
    ) -> List[KnowledgeEntry]:
        """Entries of one type, most-accessed first, newest first among ties."""
        sql = f"SELECT {ENTRY_COLUMNS} FROM knowledge k WHERE k.type = ?"
        params: List[Any] = [knowledge_type]
        if scope:
            sql += " AND k.scope = ?"
            params.append(scope)
        if not include_expired:
            sql += f" AND {LIVE_CLAUSE}"
            params.append(format_ts(self.db.now()))
        sql += " ORDER BY k.access_count DESC, k.created_at DESC, k.id DESC LIMIT ?"
        params.append(int(limit))
        return [row_to_entry(r) for r in self.db.query(sql, params)]

    def get_many(self, ids: Iterable[int]) -> Dict[int, KnowledgeEntry]:
        ids = list(dict.fromkeys(ids))
        entries: Dict[int, KnowledgeEntry] = {}
        # Stay under SQLITE_MAX_VARIABLE_NUMBER on older builds (999)
        for start in range(0, len(ids), _ID_CHUNK):
            chunk = ids[start:start + _ID_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.db.query(
                f"SELECT {ENTRY_COLUMNS} FROM knowledge k WHERE k.id IN ({placeholders})", chunk
            )
            entries.update((row[0], row_to_entry(row)) for row in rows)
        return entries

    def get_embedding(self, entry_id: int) -> Optional[List[float]]:
        if not self.db.vector_enabled:
            return None
        row = self.db.query_one(f"SELECT embedding FROM {VEC_TABLE} WHERE rowid = ?", (entry_id,))
        return deserialize_f32(row[0]) if row else None

    def count(self, include_expired: bool = True) -> int:
        if include_expired:
            row = self.db.query_one("SELECT COUNT(*) FROM knowledge")
        else:
            row = self.db.query_one(
                f"SELECT COUNT(*) FROM knowledge k WHERE {LIVE_CLAUSE}", (format_ts(self.db.now()),)
            )
        return row[0]

    # ------------------------------------------------------------------
    # Update / delete / refresh
    # ------------------------------------------------------------------

    def update(self, entry_id: int, **fields: Any) -> Dict[str, Any]:
        """Change content, type, ttl_category, metadata or project_slug.

        Changing content recomputes both hashes. Changing type (without an
        explicit ttl_category) or ttl_category recomputes expiry from now.
        Embeddings are immutable: an ``embedding`` field is rejected.
        """
        try:
            return self._update(entry_id, fields)
        except KnowledgeStoreError as e:
            logger.warning("Update of entry %s rejected: %s", entry_id, e)
            return e.to_result()
        except sqlite3.Error as e:
            logger.error("Update of entry %s failed: %s", entry_id, e)
            return {"success": False, "error": "database_error", "message": str(e)}

    def _update(self, entry_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        if "embedding" in fields:
            raise EmbeddingUpdateUnsupportedError(
                "embeddings cannot be changed in place; delete and re-insert the entry",
                id=entry_id,
            )
        unknown = sorted(set(fields) - set(_UPDATABLE_FIELDS))
        if unknown:
            raise InvalidEntryError(f"unknown update fields: {', '.join(unknown)}")
        if not fields:
            raise InvalidEntryError("no fields to update")

        assignments: List[str] = []
        params: List[Any] = []
        result: Dict[str, Any] = {"success": True, "id": entry_id, "updated": sorted(fields)}

        if "content" in fields:
            content = self._validate_content(fields["content"])
            result["content_hash"] = content_hash(content)
            assignments += ["content = ?", "content_hash = ?", "canonical_hash = ?"]
            params += [content, result["content_hash"], canonical_hash(content)]

        category = None
        if "type" in fields:
            new_type = self._validate_type(fields["type"])
            assignments.append("type = ?")
            params.append(new_type)
            category = TTLCategory.for_type(new_type)
        if fields.get("ttl_category") is not None:
            category = self._validate_ttl(fields["ttl_category"])
        if category is not None:
            expires = TTLCategory.expires_at(category, self.db.now())
            assignments += ["ttl_category = ?", "expires_at = ?"]
            params += [category, format_ts(expires)]
            result["ttl_category"] = category
            result["expires_at"] = format_ts(expires)

        if "metadata" in fields:
            meta = fields["metadata"] or {}
            if not isinstance(meta, dict):
                raise InvalidEntryError("metadata must be a mapping")
            assignments.append("metadata = ?")
            params.append(_dump_metadata(meta))
        if "project_slug" in fields:
            assignments.append("project_slug = ?")
            params.append(fields["project_slug"])

        with self.db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE knowledge SET {', '.join(assignments)} WHERE id = ?",
                params + [entry_id],
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"entry {entry_id} not found", id=entry_id)
        return result

    def delete(self, entry_id: int) -> Dict[str, Any]:
        """Remove the record and its vector row in one transaction."""
        try:
            with self.db.transaction() as conn:
                if delete_rows(self.db, conn, [entry_id]) == 0:
                    raise NotFoundError(f"entry {entry_id} not found", id=entry_id)
        except KnowledgeStoreError as e:
            return e.to_result()
        except sqlite3.Error as e:
            logger.error("Delete of entry %s failed: %s", entry_id, e)
            return {"success": False, "error": "database_error", "message": str(e)}
        return {"success": True, "id": entry_id, "deleted": True}

    def refresh_ttl(self, entry_id: int, ttl_category: Optional[str] = None) -> Dict[str, Any]:
        """Restart the entry's retention window from now.

        Uses *ttl_category* when given (and persists it), otherwise the
        entry's stored category.
        """
        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT type, ttl_category FROM knowledge WHERE id = ?", (entry_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"entry {entry_id} not found", id=entry_id)
                category = self._validate_ttl(ttl_category or row[1] or TTLCategory.for_type(row[0]))
                expires = TTLCategory.expires_at(category, self.db.now())
                conn.execute(
                    "UPDATE knowledge SET ttl_category = ?, expires_at = ? WHERE id = ?",
                    (category, format_ts(expires), entry_id),
                )
        except KnowledgeStoreError as e:
            return e.to_result()
        except sqlite3.Error as e:
            logger.error("TTL refresh of entry %s failed: %s", entry_id, e)
            return {"success": False, "error": "database_error", "message": str(e)}
        return {
            "success": True,
            "id": entry_id,
            "ttl_category": category,
            "expires_at": format_ts(expires),
        }
