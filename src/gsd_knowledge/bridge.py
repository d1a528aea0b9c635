"""
GSD Knowledge Bridge -- the narrow interface consumers use.

Wraps a StoreManager and wires the per-scope components together. Every
operation degrades instead of raising when the store cannot be used:

    writes       {"skipped": True, "reason": ...}
    list reads   empty SearchResults with .skipped / .reason set
    point reads  None

Public API:
    Core:        add, add_batch, get, update, delete, refresh_ttl
    Query:       search, get_by_type
    Lifecycle:   cleanup, get_staleness, get_stats
    Fallbacks:   safe_add, safe_search, with_store
    Status:      is_available, is_ready, close
"""

import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from gsd_knowledge.config import is_knowledge_enabled
from gsd_knowledge.connection import KnowledgeDB, StoreManager
from gsd_knowledge.dedup import DedupEvolution, Embedder
from gsd_knowledge.errors import KnowledgeStoreError
from gsd_knowledge.lifecycle import LifecycleManager
from gsd_knowledge.records import DEFAULT_TYPE_LIMIT, RecordStore
from gsd_knowledge.search import DEFAULT_LIMIT, SearchEngine
from gsd_knowledge.types import SCOPE_PROJECT, KnowledgeEntry, SearchResults

logger = logging.getLogger("gsd_knowledge.bridge")


class ScopeStores:
    """Components bound to one open store."""

    __slots__ = ("db", "records", "lifecycle", "search", "dedup")

    def __init__(self, db: KnowledgeDB):
        self.db = db
        self.records = RecordStore(db)
        self.lifecycle = LifecycleManager(db)
        self.search = SearchEngine(db, records=self.records, lifecycle=self.lifecycle)
        self.dedup = DedupEvolution(self.records, search=self.search)


class KnowledgeBridge:
    """Consumer-facing facade over a StoreManager."""

    def __init__(self, manager: Optional[StoreManager] = None, embedder: Optional[Embedder] = None):
        self.manager = manager or StoreManager()
        self.embedder = embedder
        self._scopes: Dict[str, ScopeStores] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_available(self, scope: str = SCOPE_PROJECT) -> bool:
        return bool(self.manager.is_available(scope)["available"])

    def is_ready(self, scope: str = SCOPE_PROJECT) -> bool:
        """Available and not disabled by the project's .planning/config.json."""
        return is_knowledge_enabled(self.manager.settings.project_dir) and self.is_available(scope)

    # ------------------------------------------------------------------
    # Store wiring
    # ------------------------------------------------------------------

    def _open(self, scope: str) -> ScopeStores:
        stores = self._scopes.get(scope)
        if stores is not None and not stores.db.closed:
            return stores
        with self._lock:
            stores = self._scopes.get(scope)
            if stores is not None and not stores.db.closed:
                return stores
            stores = ScopeStores(self.manager.open(scope))
            # Lazy expiry: purge expired entries the first time a store is opened
            try:
                swept = stores.lifecycle.cleanup_expired()
                if swept["deleted"]:
                    logger.info("Startup: purged %d expired entries from %s store", swept["deleted"], scope)
            except (KnowledgeStoreError, sqlite3.Error) as e:
                logger.warning("Startup cleanup of %s store failed: %s", scope, e)
            self._scopes[scope] = stores
            return stores

    def _acquire(self, scope: str) -> Tuple[Optional[ScopeStores], Optional[str]]:
        """Open *scope* or explain why it cannot be used."""
        if not is_knowledge_enabled(self.manager.settings.project_dir):
            return None, "knowledge disabled in .planning/config.json"
        stores = self._scopes.get(scope)
        if stores is not None and not stores.db.closed:
            return stores, None
        status = self.manager.is_available(scope)
        if not status["available"]:
            return None, status["reason"] or "knowledge store unavailable"
        try:
            return self._open(scope), None
        except (KnowledgeStoreError, sqlite3.Error, OSError) as e:
            logger.error("Could not open %s knowledge store: %s", scope, e)
            return None, str(e)

    def _embed(self, text: str) -> Optional[Sequence[float]]:
        if self.embedder is None or not text:
            return None
        try:
            return self.embedder(text)
        except Exception as e:  # provider is caller code; fall back to keyword-only
            logger.warning("Embedding provider failed, continuing without a vector: %s", e)
            return None

    @staticmethod
    def _skipped(reason: str) -> Dict[str, Any]:
        return {"skipped": True, "reason": reason}

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def add(
        self,
        content: str,
        type: str,
        scope: str = SCOPE_PROJECT,
        embedding: Optional[Sequence[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ttl_category: Optional[str] = None,
        project_slug: Optional[str] = None,
        dedup: bool = False,
    ) -> Dict[str, Any]:
        """Store one entry, optionally through the dedup cascade.

        Returns ``{"success": True, "id", "content_hash", ...}``, a failure
        dict, or ``{"skipped": True, "reason"}``.
        """
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        if embedding is None:
            embedding = self._embed(content)
        if dedup:
            return stores.dedup.insert_or_evolve(
                content, type, scope=scope, embedding=embedding, metadata=metadata,
                ttl_category=ttl_category, project_slug=project_slug,
            )
        return stores.records.insert(
            content, type, scope=scope, ttl_category=ttl_category, embedding=embedding,
            metadata=metadata, project_slug=project_slug,
        )

    def add_batch(
        self,
        extractions: Iterable[Dict[str, Any]],
        scope: str = SCOPE_PROJECT,
        source: str = "extraction",
    ) -> Dict[str, Any]:
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        return stores.dedup.process_batch(extractions, scope=scope, source=source, embedder=self.embedder)

    def get(self, entry_id: int, scope: str = SCOPE_PROJECT, track_access: bool = True) -> Optional[KnowledgeEntry]:
        stores, _ = self._acquire(scope)
        if stores is None:
            return None
        try:
            entry = stores.records.get(entry_id)
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("Read of entry %d failed: %s", entry_id, e)
            return None
        if entry is not None and track_access:
            try:
                stores.lifecycle.track_access(entry_id)
            except (KnowledgeStoreError, sqlite3.Error) as e:
                logger.warning("Access tracking failed for entry %d: %s", entry_id, e)
        return entry

    def update(self, entry_id: int, scope: str = SCOPE_PROJECT, **fields: Any) -> Dict[str, Any]:
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        return stores.records.update(entry_id, **fields)

    def delete(self, entry_id: int, scope: str = SCOPE_PROJECT) -> Dict[str, Any]:
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        return stores.records.delete(entry_id)

    def refresh_ttl(self, entry_id: int, scope: str = SCOPE_PROJECT, ttl_category: Optional[str] = None) -> Dict[str, Any]:
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        return stores.records.refresh_ttl(entry_id, ttl_category)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def search(
        self,
        query: Optional[str],
        scope: str = SCOPE_PROJECT,
        embedding: Optional[Sequence[float]] = None,
        limit: int = DEFAULT_LIMIT,
        types: Optional[Sequence[str]] = None,
        project_slug: Optional[str] = None,
        track_access: bool = True,
    ) -> SearchResults:
        stores, reason = self._acquire(scope)
        if stores is None:
            return SearchResults(skipped=True, reason=reason)
        if embedding is None and query:
            embedding = self._embed(query)
        return stores.search.hybrid_search(
            query=query, embedding=embedding, limit=limit, types=types,
            project_slug=project_slug, track_access=track_access,
        )

    def get_by_type(self, knowledge_type: str, scope: str = SCOPE_PROJECT, limit: int = DEFAULT_TYPE_LIMIT) -> SearchResults:
        stores, reason = self._acquire(scope)
        if stores is None:
            return SearchResults(skipped=True, reason=reason)
        try:
            return SearchResults(stores.records.get_by_type(knowledge_type, limit=limit))
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("get_by_type(%s) on %s store failed: %s", knowledge_type, scope, e)
            return SearchResults(reason=str(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cleanup(self, scope: str = SCOPE_PROJECT) -> Dict[str, Any]:
        """Sweep expired entries now. Returns ``{"deleted", "ids"}``."""
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        try:
            return stores.lifecycle.cleanup_expired()
        except KnowledgeStoreError as e:
            return e.to_result()
        except sqlite3.Error as e:
            logger.error("Cleanup of %s store failed: %s", scope, e)
            return {"success": False, "error": "database_error", "message": str(e)}

    def get_staleness(self, entry_id: int, scope: str = SCOPE_PROJECT) -> Optional[float]:
        stores, _ = self._acquire(scope)
        if stores is None:
            return None
        try:
            return stores.lifecycle.get_staleness_score(entry_id)
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("Staleness lookup for entry %d failed: %s", entry_id, e)
            return None

    def get_stats(self, scope: str = SCOPE_PROJECT, knowledge_type: Optional[str] = None) -> List[Dict[str, Any]]:
        stores, _ = self._acquire(scope)
        if stores is None:
            return []
        try:
            return stores.lifecycle.get_access_stats(knowledge_type)
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("Access stats for %s store failed: %s", scope, e)
            return []

    # ------------------------------------------------------------------
    # Fallbacks
    # ------------------------------------------------------------------

    def safe_add(self, content: str, type: str, **kwargs: Any) -> Dict[str, Any]:
        """add() that turns any unexpected failure into a skip."""
        try:
            return self.add(content, type, **kwargs)
        except Exception as e:  # last-resort guard for upstream workflows
            logger.warning("safe_add fell back to skip: %s", e)
            return self._skipped(str(e))

    def safe_search(self, query: Optional[str], **kwargs: Any) -> SearchResults:
        """search() that turns any unexpected failure into an empty result."""
        try:
            return self.search(query, **kwargs)
        except Exception as e:  # last-resort guard for upstream workflows
            logger.warning("safe_search fell back to empty results: %s", e)
            return SearchResults(skipped=True, reason=str(e))

    def with_store(self, scope: str, fn: Callable[[ScopeStores], Any]) -> Dict[str, Any]:
        """Run *fn* against the scope's components.

        Returns ``{"success": True, "result"}``, ``{"success": False, "error"}``
        or ``{"skipped": True, "reason"}``.
        """
        stores, reason = self._acquire(scope)
        if stores is None:
            return self._skipped(reason)
        try:
            return {"success": True, "result": fn(stores)}
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("with_store(%s) failed: %s", scope, e)
            return {"success": False, "error": str(e)}

    def close(self) -> None:
        with self._lock:
            self._scopes.clear()
        self.manager.close_all()

    def __enter__(self) -> "KnowledgeBridge":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
