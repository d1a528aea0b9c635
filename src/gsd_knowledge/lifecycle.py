"""
GSD Knowledge Lifecycle -- expiry sweep, access tracking and staleness.

Expiry is lazy: nothing runs on a timer. ``cleanup_expired()`` is called
when a store is first opened through KnowledgeBridge and may be called
explicitly at any time. Reads already hide expired rows, so a late sweep
only costs disk space.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from gsd_knowledge.connection import KnowledgeDB
from gsd_knowledge.records import delete_rows
from gsd_knowledge.types import TTLCategory, format_ts, parse_ts

logger = logging.getLogger("gsd_knowledge.lifecycle")

# Staleness horizon for entries that never expire.
PERMANENT_STALENESS_REFERENCE = timedelta(days=365)


class LifecycleManager:
    def __init__(self, db: KnowledgeDB):
        self.db = db

    def cleanup_expired(self) -> Dict[str, Any]:
        """Remove expired memories and their vectors. Returns ``{"deleted", "ids"}``."""
        now = format_ts(self.db.now())
        with self.db.transaction() as conn:
            ids = [
                row[0] for row in conn.execute(
                    "SELECT id FROM knowledge WHERE expires_at IS NOT NULL AND expires_at <= ? ORDER BY id",
                    (now,),
                ).fetchall()
            ]
            if ids:
                delete_rows(self.db, conn, ids)
        if ids:
            logger.info("Removed %d expired entries from %s store", len(ids), self.db.scope)
        return {"deleted": len(ids), "ids": ids}

    def track_access(self, entry_id: int) -> bool:
        return self.track_access_batch([entry_id]) == 1

    def track_access_batch(self, ids: Iterable[int]) -> int:
        """Bump access_count and last_accessed for each id. Returns rows touched."""
        unique = list(dict.fromkeys(ids))
        if not unique:
            return 0
        now = format_ts(self.db.now())
        touched = 0
        with self.db.transaction() as conn:
            for entry_id in unique:
                touched += conn.execute(
                    "UPDATE knowledge SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
                    (now, entry_id),
                ).rowcount
        return touched

    def get_staleness_score(self, entry_id: int) -> Optional[float]:
        """Time since last access (or creation) as a fraction of the TTL window, in [0, 1].

        Permanent entries are measured against a one-year window. Returns
        None for an unknown id.
        """
        row = self.db.query_one(
            "SELECT created_at, last_accessed, ttl_category, type FROM knowledge WHERE id = ?",
            (entry_id,),
        )
        if row is None:
            return None
        created_at, last_accessed, ttl_category, knowledge_type = row
        anchor = parse_ts(last_accessed) or parse_ts(created_at)
        category = ttl_category if ttl_category in TTLCategory.DURATIONS else TTLCategory.for_type(knowledge_type)
        window = TTLCategory.duration(category) or PERMANENT_STALENESS_REFERENCE
        elapsed = (self.db.now() - anchor).total_seconds()
        return min(1.0, max(0.0, elapsed / window.total_seconds()))

    def get_access_stats(self, knowledge_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Per-type counts: entries, total/average accesses, never-accessed entries."""
        sql = """SELECT type,
                        COUNT(*),
                        COALESCE(SUM(access_count), 0),
                        COALESCE(AVG(access_count), 0.0),
                        SUM(CASE WHEN access_count = 0 THEN 1 ELSE 0 END),
                        MAX(last_accessed)
                 FROM knowledge"""
        params: List[Any] = []
        if knowledge_type:
            sql += " WHERE type = ?"
            params.append(knowledge_type)
        sql += " GROUP BY type ORDER BY type"
        return [
            {
                "type": row[0],
                "count": row[1],
                "total_accesses": row[2],
                "avg_accesses": round(float(row[3]), 2),
                "never_accessed": row[4],
                "last_accessed": row[5],
            }
            for row in self.db.query(sql, params)
        ]
