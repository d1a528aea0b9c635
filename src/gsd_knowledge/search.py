"""
GSD Knowledge Search -- keyword and vector retrieval fused by reciprocal rank.

Pipeline:
  1. Keyword pass: FTS5 MATCH over sanitized, OR-joined terms, ranked by bm25,
     with scope/type/project/expiry filters in the same query.
  2. Vector pass: sqlite-vec k-NN over the normalized query embedding. The
     k-NN operator cannot take arbitrary predicates, so it over-fetches 3x,
     filters client-side and truncates.
  3. Fusion: rrf_score = sum over passes of 1 / (k + rank), k = 60.
  4. Re-rank: final_score = rrf_score * type_weight * (1 + ln(1 + access_count)).

If one pass fails (lock timeout, missing extension, SQLite error) it is
logged and skipped; the result set records which passes degraded.
"""

import logging
import math
import re
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from gsd_knowledge.connection import VEC_TABLE, KnowledgeDB
from gsd_knowledge.errors import KnowledgeStoreError
from gsd_knowledge.records import ENTRY_COLUMNS, LIVE_CLAUSE, RecordStore, row_to_entry
from gsd_knowledge.types import (
    DEFAULT_TYPE_WEIGHT,
    TYPE_WEIGHTS,
    KnowledgeEntry,
    SearchHit,
    SearchResults,
    format_ts,
)
from gsd_knowledge.vectors import normalize_embedding, serialize_f32

logger = logging.getLogger("gsd_knowledge.search")

DEFAULT_RRF_K = 60
DEFAULT_LIMIT = 10
OVERFETCH_FACTOR = 3
# sqlite-vec rejects KNN queries with k above this.
VEC_MAX_K = 4096

PASS_KEYWORD = "keyword"
PASS_VECTOR = "vector"

# Characters with meaning in FTS5 query syntax.
_FTS_SPECIAL_RE = re.compile(r'[(){}\[\]^"~*?:\\]')
_WHITESPACE_COLLAPSE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w")

RankedEntries = List[Tuple[KnowledgeEntry, float]]


# ---------------------------------------------------------------------------
# Query sanitizing
# ---------------------------------------------------------------------------


def sanitize_fts_query(query: Optional[str]) -> str:
    """Strip FTS5 syntax characters and collapse whitespace."""
    if not query:
        return ""
    cleaned = _FTS_SPECIAL_RE.sub(" ", query)
    return _WHITESPACE_COLLAPSE_RE.sub(" ", cleaned).strip()


def build_match_expression(query: Optional[str]) -> Optional[str]:
    """OR-match sanitized terms, quoting each so keywords like NOT stay literal."""
    terms = [t for t in sanitize_fts_query(query).split() if _WORD_RE.search(t)]
    if not terms:
        return None
    return " OR ".join(f'"{t}"' for t in dict.fromkeys(terms))


# ---------------------------------------------------------------------------
# Fusion and re-ranking
# ---------------------------------------------------------------------------


def type_weight(knowledge_type: str, weights: Optional[Dict[str, float]] = None) -> float:
    return (weights if weights is not None else TYPE_WEIGHTS).get(knowledge_type, DEFAULT_TYPE_WEIGHT)


def access_boost(access_count: int) -> float:
    """Diminishing-returns popularity multiplier: 1 + ln(1 + access_count)."""
    return 1.0 + math.log1p(max(0, access_count or 0))


def fuse(
    keyword_hits: RankedEntries,
    vector_hits: RankedEntries,
    k: int = DEFAULT_RRF_K,
) -> List[SearchHit]:
    """Reciprocal rank fusion. Ranks are 1-based within each pass."""
    hits: Dict[int, SearchHit] = {}

    for rank, (entry, score) in enumerate(keyword_hits, start=1):
        hit = hits.setdefault(entry.id, SearchHit(entry))
        hit.keyword_rank = rank
        hit.keyword_score = score
        hit.sources.append(PASS_KEYWORD)
        hit.rrf_score += 1.0 / (k + rank)

    for rank, (entry, similarity) in enumerate(vector_hits, start=1):
        hit = hits.setdefault(entry.id, SearchHit(entry))
        hit.vector_rank = rank
        hit.vector_similarity = similarity
        hit.sources.append(PASS_VECTOR)
        hit.rrf_score += 1.0 / (k + rank)

    return list(hits.values())


def rerank(
    hits: Iterable[SearchHit],
    limit: Optional[int] = DEFAULT_LIMIT,
    weights: Optional[Dict[str, float]] = None,
) -> List[SearchHit]:
    """Apply type weight and access boost, sort by final score, truncate."""
    ranked = []
    for hit in hits:
        hit.type_weight = type_weight(hit.entry.type, weights)
        hit.access_boost = access_boost(hit.entry.access_count)
        hit.final_score = hit.rrf_score * hit.type_weight * hit.access_boost
        ranked.append(hit)
    ranked.sort(key=lambda h: (-h.final_score, -h.rrf_score, h.id))
    return ranked if limit is None else ranked[:limit]


# ---------------------------------------------------------------------------
# SearchEngine
# ---------------------------------------------------------------------------


def _filter_clause(
    scope: Optional[str],
    types: Optional[Sequence[str]],
    project_slug: Optional[str],
    now: str,
) -> Tuple[str, List[Any]]:
    clauses = [LIVE_CLAUSE]
    params: List[Any] = [now]
    if scope:
        clauses.append("k.scope = ?")
        params.append(scope)
    if types:
        clauses.append(f"k.type IN ({','.join('?' for _ in types)})")
        params.extend(types)
    if project_slug:
        clauses.append("k.project_slug = ?")
        params.append(project_slug)
    return " AND ".join(clauses), params


class SearchEngine:
    """Hybrid search over one open store."""

    def __init__(
        self,
        db: KnowledgeDB,
        records: Optional[RecordStore] = None,
        lifecycle=None,
        type_weights: Optional[Dict[str, float]] = None,
    ):
        self.db = db
        self.records = records or RecordStore(db)
        self.lifecycle = lifecycle
        self.type_weights = dict(type_weights) if type_weights is not None else dict(TYPE_WEIGHTS)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def keyword_search(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        scope: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        project_slug: Optional[str] = None,
    ) -> RankedEntries:
        """FTS5 bm25 ranking. Returns [(entry, relevance)], best first.

        Relevance is the negated bm25 score, so larger is better.
        """
        match = build_match_expression(query)
        if match is None:
            return []
        where, params = _filter_clause(scope, types, project_slug, format_ts(self.db.now()))
        rows = self.db.query(
            f"""SELECT {ENTRY_COLUMNS}, bm25(knowledge_fts) AS score
                FROM knowledge_fts
                JOIN knowledge k ON k.id = knowledge_fts.rowid
                WHERE knowledge_fts MATCH ? AND {where}
                ORDER BY score, k.id
                LIMIT ?""",
            [match] + params + [int(limit)],
        )
        return [(row_to_entry(row), -float(row[13])) for row in rows]

    def vector_search(
        self,
        embedding: Sequence[float],
        limit: int = DEFAULT_LIMIT,
        scope: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        project_slug: Optional[str] = None,
        overfetch: int = OVERFETCH_FACTOR,
    ) -> RankedEntries:
        """Cosine nearest neighbours. Returns [(entry, similarity)], best first.

        Fetches *limit* x *overfetch* neighbours (capped at VEC_MAX_K) so rows
        dropped by the filters can be replaced. Returns [] when the vector
        extension is not loaded.
        """
        if not self.db.vector_enabled:
            return []
        query = normalize_embedding(embedding, self.db.embedding_dim)
        rows = self.db.query(
            f"SELECT rowid, distance FROM {VEC_TABLE} WHERE embedding MATCH ? AND k = ? ORDER BY distance",
            (serialize_f32(query), min(max(1, int(limit) * max(1, overfetch)), VEC_MAX_K)),
        )
        if not rows:
            return []

        entries = self.records.get_many(rowid for rowid, _ in rows)
        now = self.db.now()
        wanted_types = set(types) if types else None
        results: RankedEntries = []
        for rowid, distance in rows:
            entry = entries.get(rowid)
            if entry is None or entry.is_expired(now):
                continue
            if scope and entry.scope != scope:
                continue
            if wanted_types is not None and entry.type not in wanted_types:
                continue
            if project_slug and entry.project_slug != project_slug:
                continue
            results.append((entry, 1.0 - float(distance)))
            if len(results) >= limit:
                break
        return results

    def nearest(self, embedding: Sequence[float], k: int = 5) -> RankedEntries:
        """Closest live entries to *embedding*, for the dedup cascade."""
        return self.vector_search(embedding, limit=k)

    # ------------------------------------------------------------------
    # Hybrid
    # ------------------------------------------------------------------

    def hybrid_search(
        self,
        query: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
        limit: int = DEFAULT_LIMIT,
        scope: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        project_slug: Optional[str] = None,
        k: int = DEFAULT_RRF_K,
        track_access: bool = True,
    ) -> SearchResults:
        """Run both passes, fuse, re-rank and (optionally) record access on the hits."""
        candidate_limit = max(1, int(limit)) * OVERFETCH_FACTOR
        filters = {"scope": scope, "types": types, "project_slug": project_slug}
        degraded: List[str] = []

        keyword_hits: RankedEntries = []
        if query and query.strip():
            try:
                keyword_hits = self.keyword_search(query, candidate_limit, **filters)
            except (KnowledgeStoreError, sqlite3.Error) as e:
                logger.warning("Keyword pass failed, continuing without it: %s", e)
                degraded.append(PASS_KEYWORD)

        vector_hits: RankedEntries = []
        if embedding is not None:
            if not self.db.vector_enabled:
                logger.debug("Vector pass skipped: sqlite-vec not loaded for %s store", self.db.scope)
                degraded.append(PASS_VECTOR)
            else:
                try:
                    vector_hits = self.vector_search(embedding, candidate_limit, overfetch=1, **filters)
                except (KnowledgeStoreError, sqlite3.Error) as e:
                    logger.warning("Vector pass failed, continuing without it: %s", e)
                    degraded.append(PASS_VECTOR)

        hits = rerank(fuse(keyword_hits, vector_hits, k), limit, self.type_weights)

        if track_access and hits and self.lifecycle is not None:
            try:
                self.lifecycle.track_access_batch(hit.id for hit in hits)
            except (KnowledgeStoreError, sqlite3.Error) as e:
                logger.warning("Access tracking failed for %d hits: %s", len(hits), e)

        return SearchResults(hits, degraded=degraded)

    def search(self, query: Optional[str], embedding: Optional[Sequence[float]] = None, **options) -> SearchResults:
        return self.hybrid_search(query=query, embedding=embedding, **options)
