"""Input validation and score normalization shared by every backend."""

import math
from typing import Any, List, Optional, Sequence

import numpy as np

from .base import (
    Payload,
    RecordId,
    VectorDimensionError,
    VectorStoreError,
)

MAX_RECORD_ID = 2 ** 64 - 1


def ensure_vector(vector: Any, dimension: int, operation: str) -> List[float]:
    """Validate a vector against the collection dimension.

    Returns the vector as a plain list of floats, detached from the caller's
    object so later mutation of the input never reaches the store.
    """
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise VectorStoreError(f"Vector must be a sequence of numbers: {e}", operation=operation, cause=e) from e

    if array.ndim != 1:
        raise VectorStoreError("Vector must be one-dimensional", operation=operation)

    if array.shape[0] != dimension:
        raise VectorDimensionError(dimension, int(array.shape[0]), operation=operation)

    if not np.all(np.isfinite(array)):
        raise VectorStoreError("Vector contains NaN or infinite values", operation=operation)

    return array.tolist()


def ensure_batch(
    vectors: Sequence[Any],
    ids: Sequence[RecordId],
    payloads: Sequence[Payload],
    dimension: int
) -> List[List[float]]:
    """Validate an insert batch: equal lengths first, then every vector."""
    if not (len(vectors) == len(ids) == len(payloads)):
        raise VectorStoreError(
            "vectors, ids and payloads must have the same length "
            f"(got {len(vectors)}, {len(ids)}, {len(payloads)})",
            operation="insert",
        )
    for payload in payloads:
        if not isinstance(payload, dict):
            raise VectorStoreError(
                f"Payload must be a mapping, got {type(payload).__name__}",
                operation="insert",
            )
    return [ensure_vector(vector, dimension, "insert") for vector in vectors]


def ensure_limit(limit: int, operation: str) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise VectorStoreError(f"limit must be a positive integer, got {limit!r}", operation=operation)
    return limit


def normalize_id(record_id: Any, operation: Optional[str] = None) -> RecordId:
    """Normalize a record id to ``int`` or ``str``.

    Ids are either unsigned 64-bit integers or non-empty text. Text made only
    of ASCII digits is read as the integer it spells, so ids round-tripped
    through text-only backends come back as the same value.
    """
    if isinstance(record_id, bool):
        raise VectorStoreError("Record id must not be a boolean", operation=operation)

    if isinstance(record_id, (int, np.integer)):
        value = int(record_id)
        if value < 0 or value > MAX_RECORD_ID:
            raise VectorStoreError(f"Integer record id out of range: {value}", operation=operation)
        return value

    if isinstance(record_id, str):
        if not record_id:
            raise VectorStoreError("Record id must not be empty", operation=operation)
        if record_id.isascii() and record_id.isdigit():
            return normalize_id(int(record_id), operation)
        return record_id

    raise VectorStoreError(
        f"Record id must be an int or str, got {type(record_id).__name__}",
        operation=operation,
    )


def id_to_text(record_id: Any, operation: Optional[str] = None) -> str:
    """Text form of an id for backends that only store string ids."""
    return str(normalize_id(record_id, operation))


def cosine_distance_to_score(distance: float) -> float:
    """Cosine distance (``1 - cos``) to similarity."""
    return 1.0 - float(distance)


def euclidean_distance_to_score(distance: float) -> float:
    """Map a non-negative distance into ``(0, 1]`` with 1.0 for identical vectors."""
    return 1.0 / (1.0 + max(float(distance), 0.0))


def squared_euclidean_to_score(squared: float) -> float:
    """Same scale as ``euclidean_distance_to_score`` for backends reporting ``d^2``."""
    return euclidean_distance_to_score(math.sqrt(max(float(squared), 0.0)))


def last_write_indices(keys: Sequence[Any]) -> List[int]:
    """Ascending indices of the last occurrence of each key (last write wins)."""
    latest = {}
    for index, key in enumerate(keys):
        latest[key] = index
    return sorted(latest.values())
