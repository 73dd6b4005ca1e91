"""
Vector Distance Utilities

Shared numeric helpers for enrollment and matching. All embeddings handled
by the engine are 1-D float vectors of a common length L decided by the
external detector; this module only enforces that vectors compared together
share that length.
"""

from typing import Any, Sequence

import numpy as np

from faceid.errors import InvalidInputError


def to_embedding(values: Any) -> np.ndarray:
    """
    Coerce a sequence of numbers into a 1-D float32 embedding.

    Args:
        values: list, tuple or numpy array of real numbers.

    Returns:
        A new (L,) float32 array.

    Raises:
        InvalidInputError: If the values are not a non-empty flat vector
                           of finite numbers.
    """
    try:
        arr = np.array(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Cannot interpret value as embedding: {e}") from e

    if arr.ndim != 1 or arr.shape[0] == 0:
        raise InvalidInputError(f"Embedding must be a non-empty 1-D vector, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidInputError("Embedding contains non-finite values")

    return arr


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Euclidean (L2) distance between two equal-length vectors.

    Raises:
        InvalidInputError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()

    if a.shape[0] != b.shape[0]:
        raise InvalidInputError(
            f"Embedding length mismatch: {a.shape[0]} != {b.shape[0]}"
        )

    return float(np.linalg.norm(a - b))


def distances_to(query: Sequence[float], references: np.ndarray) -> np.ndarray:
    """
    Euclidean distance from one query vector to every row of a matrix.

    Args:
        query: (L,) vector.
        references: (M, L) matrix.

    Returns:
        (M,) float64 array of distances, in row order.

    Raises:
        InvalidInputError: If the query length differs from the row length.
    """
    query = np.asarray(query, dtype=np.float64).ravel()
    references = np.asarray(references, dtype=np.float64)

    if references.ndim != 2:
        raise InvalidInputError(f"References must be a 2-D matrix, got shape {references.shape}")
    if references.shape[0] == 0:
        return np.empty(0, dtype=np.float64)
    if references.shape[1] != query.shape[0]:
        raise InvalidInputError(
            f"Embedding length mismatch: query={query.shape[0]}, index={references.shape[1]}"
        )

    return np.linalg.norm(references - query, axis=1)


def mean_embedding(embeddings: Sequence[Sequence[float]]):
    """
    Per-dimension arithmetic mean of a set of embeddings.

    Returns:
        (L,) float32 mean, or None when no embeddings are given.

    Raises:
        InvalidInputError: If the embeddings do not share one length.
    """
    if embeddings is None or len(embeddings) == 0:
        return None

    lengths = {len(e) for e in embeddings}
    if len(lengths) != 1:
        raise InvalidInputError(f"Embeddings have mixed lengths: {sorted(lengths)}")

    stacked = np.asarray(embeddings, dtype=np.float64)
    return stacked.mean(axis=0).astype(np.float32)
