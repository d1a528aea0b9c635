"""Exact and canonical content hashes used for dedup lookups."""

import hashlib
import re
import unicodedata

_PUNCT_STRIP_RE = re.compile(r"[.,;:!?'\"]")
_WHITESPACE_COLLAPSE_RE = re.compile(r"\s+")


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the content exactly as given."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonicalize(text: str) -> str:
    """Fold case, punctuation and whitespace so formatting variants compare equal."""
    text = unicodedata.normalize("NFKC", text)
    text = text.lower()
    text = _PUNCT_STRIP_RE.sub("", text)
    text = _WHITESPACE_COLLAPSE_RE.sub(" ", text)
    return text.strip()


def canonical_hash(text: str) -> str:
    return content_hash(canonicalize(text))
