"""GSD Knowledge -- embedded knowledge store with hybrid search and memory evolution."""

__version__ = "0.1.0"

from gsd_knowledge.bridge import KnowledgeBridge
from gsd_knowledge.config import Settings
from gsd_knowledge.connection import KnowledgeDB, StoreManager
from gsd_knowledge.errors import KnowledgeStoreError
from gsd_knowledge.types import KnowledgeEntry, KnowledgeType, SearchResults, TTLCategory

__all__ = [
    "KnowledgeBridge",
    "KnowledgeDB",
    "KnowledgeEntry",
    "KnowledgeStoreError",
    "KnowledgeType",
    "SearchResults",
    "Settings",
    "StoreManager",
    "TTLCategory",
]
