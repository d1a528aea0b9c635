"""
GSD Knowledge Dedup -- three-stage similarity cascade and memory evolution.

Stages, first hit wins:
  1. exact      content_hash match            similarity 1.0
  2. canonical  canonical_hash match          similarity 0.9
  3. embedding  nearest stored neighbour      cosine similarity

Decision, whatever stage produced the score:
  similarity > 0.88          skip     (nothing written)
  0.65 <= similarity <= 0.88 evolve   (dated delta appended to the existing entry)
  otherwise                  create   (canonical hash stamped into metadata)

Evolution never touches the stored embedding; it keeps describing the
original concept.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from gsd_knowledge.errors import KnowledgeStoreError
from gsd_knowledge.hashing import canonical_hash, content_hash
from gsd_knowledge.records import RecordStore
from gsd_knowledge.types import EVOLUTION_HISTORY_LIMIT, KnowledgeEntry, format_ts

logger = logging.getLogger("gsd_knowledge.dedup")

SKIP_THRESHOLD = 0.88
EVOLVE_THRESHOLD = 0.65
CANONICAL_SIMILARITY = 0.9
NEIGHBOR_COUNT = 5
CANONICAL_HASH_LIMIT = 20

STAGE_EXACT = "exact"
STAGE_CANONICAL = "canonical"
STAGE_EMBEDDING = "embedding"

ACTION_SKIP = "skip"
ACTION_EVOLVE = "evolve"
ACTION_CREATE = "create"

Embedder = Callable[[str], Optional[Sequence[float]]]


class DuplicateCheck:
    """Outcome of the cascade: the best match (if any) and how it was found."""

    __slots__ = ("stage", "similarity", "existing")

    def __init__(self, stage: Optional[str] = None, similarity: float = 0.0,
                 existing: Optional[KnowledgeEntry] = None):
        self.stage = stage
        self.similarity = similarity
        self.existing = existing

    @property
    def existing_id(self) -> Optional[int]:
        return self.existing.id if self.existing is not None else None

    @property
    def action(self) -> str:
        if self.existing is None:
            return ACTION_CREATE
        return decide(self.similarity)

    @property
    def is_duplicate(self) -> bool:
        return self.action == ACTION_SKIP

    def __repr__(self) -> str:
        return f"DuplicateCheck(stage={self.stage!r}, similarity={self.similarity:.3f}, existing_id={self.existing_id})"


def decide(similarity: float) -> str:
    if similarity > SKIP_THRESHOLD:
        return ACTION_SKIP
    if similarity >= EVOLVE_THRESHOLD:
        return ACTION_EVOLVE
    return ACTION_CREATE


def merge_memories(
    existing: KnowledgeEntry,
    new_content: str,
    similarity: float,
    now: datetime,
) -> Tuple[str, Dict[str, Any]]:
    """Build the evolved content and metadata for *existing*."""
    merged = f"{existing.content}\n\nUpdate: [{now.strftime('%Y-%m-%d')}] {new_content}"

    meta = dict(existing.metadata)
    meta["evolution_count"] = int(meta.get("evolution_count") or 0) + 1
    meta["last_evolution"] = format_ts(now)
    history = list(meta.get("evolution_history") or [])
    history.append({
        "date": format_ts(now),
        "content_preview": new_content[:100],
        "similarity": round(float(similarity), 4),
    })
    meta["evolution_history"] = history[-EVOLUTION_HISTORY_LIMIT:]
    return merged, meta


def submission_hashes(existing: KnowledgeEntry, new_content: str) -> List[str]:
    """Canonical hashes stage 2 should recognise once *new_content* is merged.

    The first hash (the original content) is always kept; later ones are
    bounded to the most recent CANONICAL_HASH_LIMIT - 1.
    """
    hashes = list(existing.metadata.get("canonical_hashes") or [])
    if not hashes:
        seed = existing.metadata.get("canonical_hash") or existing.canonical_hash
        if seed:
            hashes.append(seed)
    new_hash = canonical_hash(new_content)
    if new_hash not in hashes:
        hashes.append(new_hash)
    return hashes[:1] + hashes[1:][-(CANONICAL_HASH_LIMIT - 1):]


def deduplicate_extractions(extractions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop items whose canonical form repeats an earlier item in the same batch."""
    seen = set()
    unique = []
    for ext in extractions:
        content = ext.get("content")
        if not isinstance(content, str):
            unique.append(ext)
            continue
        canon = canonical_hash(content)
        if canon in seen:
            continue
        seen.add(canon)
        unique.append(dict(ext, content_hash=content_hash(content), canonical_hash=canon))
    return unique


class DedupEvolution:
    """Routes machine-derived content through the cascade before it is stored.

    *search* only needs a ``nearest(embedding, k)`` method returning
    ``[(entry, similarity)]``; without one the cascade stops at stage 2.
    """

    def __init__(self, records: RecordStore, search=None):
        self.records = records
        self.search = search

    @property
    def db(self):
        return self.records.db

    def check_duplicate(self, content: str, embedding: Optional[Sequence[float]] = None) -> DuplicateCheck:
        existing = self.records.get_by_hash(content_hash(content), include_expired=False)
        if existing is not None:
            return DuplicateCheck(STAGE_EXACT, 1.0, existing)

        existing = self.records.get_by_canonical_hash(canonical_hash(content), include_expired=False)
        if existing is not None:
            return DuplicateCheck(STAGE_CANONICAL, CANONICAL_SIMILARITY, existing)

        if embedding is None or self.search is None:
            return DuplicateCheck()
        try:
            neighbors = self.search.nearest(embedding, k=NEIGHBOR_COUNT)
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.warning("Embedding stage skipped, nearest-neighbour lookup failed: %s", e)
            return DuplicateCheck()
        if not neighbors:
            return DuplicateCheck()
        entry, similarity = max(neighbors, key=lambda n: n[1])
        return DuplicateCheck(STAGE_EMBEDDING, float(similarity), entry)

    def insert_or_evolve(
        self,
        content: str,
        type: str,
        scope: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ttl_category: Optional[str] = None,
        project_slug: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Skip, evolve or create. Returns a result dict with ``action``.

        ``action`` is ``skipped``, ``evolved``, ``created`` or ``failed``.
        The check and the write share one transaction.
        """
        if not isinstance(content, str) or not content.strip():
            return {"success": False, "action": "failed", "error": "invalid_entry",
                    "message": "content must be a non-empty string"}
        try:
            with self.db.transaction():
                check = self.check_duplicate(content, embedding)
                action = check.action
                if action == ACTION_SKIP:
                    logger.debug("Skipping duplicate of entry %d (%s, %.3f)",
                                 check.existing_id, check.stage, check.similarity)
                    return {
                        "success": True,
                        "action": "skipped",
                        "id": check.existing_id,
                        "stage": check.stage,
                        "similarity": check.similarity,
                        "reason": "duplicate",
                    }
                if action == ACTION_EVOLVE:
                    return self._evolve(check, content)
                return self._create(check, content, type, scope, embedding, metadata, ttl_category, project_slug)
        except (KnowledgeStoreError, sqlite3.Error) as e:
            logger.error("insert_or_evolve failed: %s", e)
            result = e.to_result() if isinstance(e, KnowledgeStoreError) else {
                "success": False, "error": "database_error", "message": str(e)}
            result["action"] = "failed"
            return result

    def _evolve(self, check: DuplicateCheck, content: str) -> Dict[str, Any]:
        existing = check.existing
        merged, meta = merge_memories(existing, content, check.similarity, self.db.now())
        meta["canonical_hash"] = canonical_hash(content)
        meta["canonical_hashes"] = submission_hashes(existing, content)
        result = self.records.update(existing.id, content=merged, metadata=meta)
        if not result.get("success"):
            return dict(result, action="failed")
        logger.info("Evolved entry %d (%s similarity %.3f, evolution #%d)",
                    existing.id, check.stage, check.similarity, meta["evolution_count"])
        return {
            "success": True,
            "action": "evolved",
            "id": existing.id,
            "stage": check.stage,
            "similarity": check.similarity,
            "evolution_count": meta["evolution_count"],
            "content_hash": result.get("content_hash"),
        }

    def _create(self, check, content, type, scope, embedding, metadata, ttl_category, project_slug):
        meta = dict(metadata or {})
        meta["canonical_hash"] = canonical_hash(content)
        result = self.records.insert(
            content, type, scope=scope, ttl_category=ttl_category,
            embedding=embedding, metadata=meta, project_slug=project_slug,
        )
        if not result.get("success"):
            return dict(result, action="failed")
        created = dict(result, action="created")
        if check.existing is not None:
            created["nearest_id"] = check.existing_id
            created["similarity"] = check.similarity
        return created

    def process_batch(
        self,
        extractions: Iterable[Dict[str, Any]],
        scope: Optional[str] = None,
        source: str = "extraction",
        embedder: Optional[Embedder] = None,
    ) -> Dict[str, Any]:
        """Ingest many extracted items. Returns ``{created, evolved, skipped, errors}``.

        Items repeating an earlier item in the batch count as skipped. Each
        item is committed on its own so one failure does not lose the rest.
        """
        extractions = list(extractions)
        results: Dict[str, Any] = {"created": 0, "evolved": 0, "skipped": 0, "errors": []}
        unique = deduplicate_extractions(extractions)
        results["skipped"] += len(extractions) - len(unique)

        for ext in unique:
            content = ext.get("content")
            preview = content[:50] if isinstance(content, str) else repr(content)[:50]
            try:
                embedding = ext.get("embedding")
                if embedding is None and embedder is not None and isinstance(content, str):
                    embedding = embedder(content)
                metadata = dict(ext.get("metadata") or {})
                metadata.setdefault("source", source)
                if ext.get("pattern"):
                    metadata.setdefault("pattern", ext["pattern"])
                metadata.setdefault("extracted_at", format_ts(self.db.now()))
                outcome = self.insert_or_evolve(
                    content,
                    ext.get("type", "summary"),
                    scope=scope,
                    embedding=embedding,
                    metadata=metadata,
                    ttl_category=ext.get("ttl_category"),
                    project_slug=ext.get("project_slug"),
                )
            except Exception as e:  # embedder is caller code; record and keep going
                logger.warning("Batch item failed (%s...): %s", preview, e)
                results["errors"].append({"content": preview, "error": str(e)})
                continue
            action = outcome.get("action")
            if action in ("created", "evolved", "skipped"):
                results[action] += 1
            else:
                results["errors"].append({"content": preview, "error": outcome.get("message") or outcome.get("error")})
        return results
