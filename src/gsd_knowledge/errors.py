"""Typed failures raised inside the store.

Public write operations catch these and hand back ``exc.to_result()`` so
callers only ever see result dicts.
"""

from typing import Any, Dict


class KnowledgeStoreError(Exception):
    """Base class for every knowledge store failure."""

    code = "error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": False, "error": self.code, "message": str(self)}
        result.update(self.details)
        return result


class StoreUnavailableError(KnowledgeStoreError):
    """SQLite driver or FTS5 support is missing."""

    code = "unavailable"


class StoreCorruptedError(KnowledgeStoreError):
    """The store file exists but is not a readable SQLite database."""

    code = "store_corrupted"


class StoreLockedError(KnowledgeStoreError):
    """The write lock could not be taken within the retry budget."""

    code = "locked"


class NotFoundError(KnowledgeStoreError):
    code = "not_found"


class IdentityMismatchError(KnowledgeStoreError):
    """A record row and its vector row did not end up sharing one id."""

    code = "identity_mismatch"


class EmbeddingUpdateUnsupportedError(KnowledgeStoreError):
    """Embeddings are immutable once written."""

    code = "embedding_update_unsupported"


class InvalidEmbeddingError(KnowledgeStoreError):
    code = "invalid_embedding"


class InvalidEntryError(KnowledgeStoreError):
    """Content, type, scope or TTL category failed validation."""

    code = "invalid_entry"


class MigrationError(KnowledgeStoreError):
    code = "migration_failed"
