"""Embedding validation and float32 (de)serialization for sqlite-vec."""

from typing import List, Optional, Sequence

import numpy as np

from gsd_knowledge.errors import InvalidEmbeddingError


def normalize_embedding(embedding: Sequence[float], dim: int) -> np.ndarray:
    """Return *embedding* as a unit-length float32 array of length *dim*.

    Raises InvalidEmbeddingError for a wrong length, non-finite values or a
    zero vector.
    """
    try:
        array = np.asarray(embedding, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError) as e:
        raise InvalidEmbeddingError(f"embedding is not a numeric vector: {e}") from e
    if array.shape[0] != dim:
        raise InvalidEmbeddingError(
            f"embedding has {array.shape[0]} dimensions, expected {dim}",
            expected_dim=dim,
            actual_dim=int(array.shape[0]),
        )
    if not np.all(np.isfinite(array)):
        raise InvalidEmbeddingError("embedding contains NaN or infinite values")
    norm = float(np.linalg.norm(array))
    if norm == 0.0:
        raise InvalidEmbeddingError("embedding is the zero vector")
    return array / norm


def serialize_f32(vector: np.ndarray) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def deserialize_f32(data: Optional[bytes]) -> Optional[List[float]]:
    if data is None:
        return None
    return np.frombuffer(data, dtype=np.float32).tolist()
