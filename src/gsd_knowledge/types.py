"""
GSD Knowledge Types -- entries, TTL categories, type weights and search hits.

Timestamps are timezone-aware UTC datetimes in memory and fixed-width
ISO-8601 strings on disk, so comparing the stored strings in SQL gives the
same order as comparing the datetimes.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

# ---------------------------------------------------------------------------
# Scopes and knowledge types
# ---------------------------------------------------------------------------

SCOPE_GLOBAL = "global"
SCOPE_PROJECT = "project"
SCOPES = (SCOPE_GLOBAL, SCOPE_PROJECT)


class KnowledgeType:
    """Well-known knowledge types. Any other string is accepted as a type."""

    DECISION = "decision"
    LESSON = "lesson"
    SUMMARY = "summary"
    TEMP_NOTE = "temp_note"

    ALL = (DECISION, LESSON, SUMMARY, TEMP_NOTE)


class TTLCategory:
    """Named retention windows. ``None`` duration means the entry never expires."""

    PERMANENT = "permanent"
    LONG_TERM = "long_term"
    SHORT_TERM = "short_term"
    EPHEMERAL = "ephemeral"

    ALL = (PERMANENT, LONG_TERM, SHORT_TERM, EPHEMERAL)

    DURATIONS: Dict[str, Optional[timedelta]] = {
        PERMANENT: None,
        LONG_TERM: timedelta(days=90),
        SHORT_TERM: timedelta(days=7),
        EPHEMERAL: timedelta(hours=24),
    }

    TYPE_DEFAULTS: Dict[str, str] = {
        KnowledgeType.LESSON: PERMANENT,
        KnowledgeType.DECISION: LONG_TERM,
        KnowledgeType.SUMMARY: SHORT_TERM,
        KnowledgeType.TEMP_NOTE: EPHEMERAL,
    }

    @classmethod
    def validate(cls, category: str) -> str:
        if category not in cls.DURATIONS:
            raise ValueError(f"Unknown TTL category: {category!r}")
        return category

    @classmethod
    def duration(cls, category: str) -> Optional[timedelta]:
        return cls.DURATIONS[cls.validate(category)]

    @classmethod
    def for_type(cls, knowledge_type: str) -> str:
        return cls.TYPE_DEFAULTS.get(knowledge_type, cls.SHORT_TERM)

    @classmethod
    def expires_at(cls, category: str, now: datetime) -> Optional[datetime]:
        """Expiry for an entry created (or refreshed) at *now*."""
        delta = cls.duration(category)
        return None if delta is None else now + delta


# Ranking multipliers applied after fusion.
TYPE_WEIGHTS: Dict[str, float] = {
    KnowledgeType.DECISION: 2.0,
    KnowledgeType.LESSON: 2.0,
    KnowledgeType.SUMMARY: 0.5,
    KnowledgeType.TEMP_NOTE: 0.3,
}
DEFAULT_TYPE_WEIGHT = 1.0

# Metadata keys the store itself reads or writes. Unknown keys are kept as-is.
METADATA_KEYS: Dict[str, str] = {
    "confidence": "caller-supplied confidence in [0, 1]",
    "source": "where the entry came from (e.g. extraction batch source)",
    "project_slug": "project the entry belongs to; mirrored into its own column",
    "tags": "list of free-form labels",
    "canonical_hash": "canonical hash of the most recent submission",
    "canonical_hashes": "canonical hashes of the original content and every merged submission",
    "evolution_count": "number of merges applied to this entry",
    "last_evolution": "ISO timestamp of the latest merge",
    "evolution_history": "last 10 merges as {date, content_preview, similarity}",
}
EVOLUTION_HISTORY_LIMIT = 10


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Render an aware datetime as the fixed-width string stored on disk."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (no tz), Z-suffix, and +00:00 suffix.
    Returns None when *value* is falsy.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# KnowledgeEntry
# ---------------------------------------------------------------------------


class KnowledgeEntry:
    """One stored fact as read back from the database."""

    __slots__ = (
        "id",
        "content",
        "type",
        "scope",
        "created_at",
        "expires_at",
        "access_count",
        "last_accessed",
        "content_hash",
        "canonical_hash",
        "ttl_category",
        "project_slug",
        "metadata",
        "embedding",
    )

    def __init__(
        self,
        id: int,
        content: str,
        type: str,
        scope: str,
        created_at: datetime,
        expires_at: Optional[datetime] = None,
        access_count: int = 0,
        last_accessed: Optional[datetime] = None,
        content_hash: str = "",
        canonical_hash: Optional[str] = None,
        ttl_category: Optional[str] = None,
        project_slug: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
    ):
        self.id = id
        self.content = content
        self.type = type
        self.scope = scope
        self.created_at = created_at
        self.expires_at = expires_at
        self.access_count = access_count
        self.last_accessed = last_accessed
        self.content_hash = content_hash
        self.canonical_hash = canonical_hash
        self.ttl_category = ttl_category
        self.project_slug = project_slug
        self.metadata = metadata or {}
        self.embedding = embedding

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "content": self.content,
            "type": self.type,
            "scope": self.scope,
            "created_at": format_ts(self.created_at),
            "expires_at": format_ts(self.expires_at),
            "access_count": self.access_count,
            "last_accessed": format_ts(self.last_accessed),
            "content_hash": self.content_hash,
            "canonical_hash": self.canonical_hash,
            "ttl_category": self.ttl_category,
            "project_slug": self.project_slug,
            "metadata": dict(self.metadata),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    def __repr__(self) -> str:
        return f"KnowledgeEntry(id={self.id}, type={self.type!r}, scope={self.scope!r})"


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------


class SearchHit:
    """A fused candidate with the scores that produced its rank."""

    __slots__ = (
        "entry",
        "sources",
        "keyword_rank",
        "vector_rank",
        "keyword_score",
        "vector_similarity",
        "rrf_score",
        "type_weight",
        "access_boost",
        "final_score",
    )

    def __init__(self, entry: KnowledgeEntry):
        self.entry = entry
        self.sources: List[str] = []
        self.keyword_rank: Optional[int] = None
        self.vector_rank: Optional[int] = None
        self.keyword_score: Optional[float] = None
        self.vector_similarity: Optional[float] = None
        self.rrf_score = 0.0
        self.type_weight = DEFAULT_TYPE_WEIGHT
        self.access_boost = 1.0
        self.final_score = 0.0

    @property
    def id(self) -> int:
        return self.entry.id

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data.update({
            "sources": list(self.sources),
            "keyword_rank": self.keyword_rank,
            "vector_rank": self.vector_rank,
            "keyword_score": self.keyword_score,
            "vector_similarity": self.vector_similarity,
            "rrf_score": self.rrf_score,
            "type_weight": self.type_weight,
            "access_boost": self.access_boost,
            "final_score": self.final_score,
        })
        return data

    def __repr__(self) -> str:
        return f"SearchHit(id={self.id}, final_score={self.final_score:.6f}, sources={self.sources})"


class SearchResults(list):
    """Ordered hits plus how the search ran.

    ``degraded`` names the passes that failed and were skipped.
    ``skipped``/``reason`` are set when the store itself was unavailable.
    """

    def __init__(
        self,
        hits: Iterable[Any] = (),
        degraded: Optional[List[str]] = None,
        skipped: bool = False,
        reason: Optional[str] = None,
    ):
        super().__init__(hits)
        self.degraded: List[str] = list(degraded or [])
        self.skipped = skipped
        self.reason = reason

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)
